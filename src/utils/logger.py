"""Centralized logging with structured context and secrets masking."""

import logging
import os
import re
import sys
import time
from contextlib import contextmanager
from pathlib import Path

# Patterns to mask in log output (prevents credential leakage)
_SECRET_PATTERNS = [
    (re.compile(r'(postgres(?:ql)?://[^:/\s]+:)[^@\s]+(@)', re.IGNORECASE), r'\1***\2'),
    (re.compile(r'(password["\']?\s*[:=]\s*["\']?)[^\s"\'&]+', re.IGNORECASE), r'\1***'),
    (re.compile(r'(Authorization["\']?\s*[:=]\s*Bearer\s+)\S+', re.IGNORECASE), r'\1***'),
    (re.compile(r'(X-Webhook-Secret["\']?\s*[:=]\s*["\']?)[^\s"\'&]+', re.IGNORECASE), r'\1***'),
]


def mask_secrets(text: str) -> str:
    """Apply every secret pattern to a string."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretsMaskingFilter(logging.Filter):
    """Filter that redacts DSN passwords and tokens from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                mask_secrets(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


_FORMATTER = logging.Formatter(
    "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
_SECRETS_FILTER = SecretsMaskingFilter()

# Every logger handed out by setup_logger, so a log file can be attached later
_loggers: dict[str, logging.Logger] = {}
_file_handler: logging.FileHandler | None = None


def _add_file_handler(logger: logging.Logger):
    if _file_handler is not None and _file_handler not in logger.handlers:
        logger.addHandler(_file_handler)


def setup_logger(name: str, log_file: str | None = None) -> logging.Logger:
    """Create a masked console logger.

    ``log_file`` enables the shared file handler for every logger, as
    ``enable_file_logging`` does.
    """
    logger = logging.getLogger(name)
    if log_file:
        enable_file_logging(log_file)

    # Avoid adding duplicate handlers on repeated calls
    if name in _loggers:
        return logger
    _loggers[name] = logger

    logger.setLevel(logging.INFO)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_FORMATTER)
    console.addFilter(_SECRETS_FILTER)
    logger.addHandler(console)
    _add_file_handler(logger)
    return logger


def enable_file_logging(log_file: str) -> logging.FileHandler:
    """Send every monitoring logger, including ones created later, to ``log_file``.

    Repeated calls with the same path reuse the open handler.
    """
    global _file_handler
    log_path = Path(log_file)
    if _file_handler is not None:
        if _file_handler.baseFilename == os.path.abspath(log_path):
            return _file_handler
        disable_file_logging()

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(_FORMATTER)
    handler.addFilter(_SECRETS_FILTER)
    _file_handler = handler
    for logger in _loggers.values():
        _add_file_handler(logger)
    return handler


def disable_file_logging():
    global _file_handler
    if _file_handler is None:
        return
    for logger in _loggers.values():
        logger.removeHandler(_file_handler)
    _file_handler.close()
    _file_handler = None


@contextmanager
def log_duration(logger: logging.Logger, operation: str, **extra):
    """Context manager that logs the duration of an operation.

    Usage:
        with log_duration(logger, "monitoring_cycle", configs=len(configs)):
            orchestrator.run_cycle()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        parts = [f"{operation} completed in {elapsed_ms:.0f}ms"]
        for k, v in extra.items():
            parts.append(f"{k}={v}")
        logger.info(" | ".join(parts))
