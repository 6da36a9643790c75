"""Configuration management - loads environment variables with validation."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


def _load_env():
    """Load .env file from project root."""
    env_path = Path(__file__).resolve().parent.parent.parent / ".env"
    load_dotenv(env_path)


_load_env()


def _require(key: str) -> str:
    """Return env var or raise with a helpful message."""
    val = os.getenv(key)
    if not val:
        raise EnvironmentError(
            f"Missing required environment variable: {key}. "
            f"Copy .env.example to .env and fill in your keys."
        )
    return val


def _optional(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _flag(key: str, default: str = "true") -> bool:
    return _optional(key, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    # --- Database ---
    database_url: str = field(default_factory=lambda: _optional("DATABASE_URL"))

    # --- Scheduler ---
    check_interval_minutes: int = field(
        default_factory=lambda: int(_optional("CHECK_INTERVAL_MINUTES", "15"))
    )

    # --- Rule defaults ---
    default_minimum_emails_sent: int = field(
        default_factory=lambda: int(_optional("DEFAULT_MINIMUM_EMAILS_SENT", "100"))
    )

    # --- Alert suppression ---
    alert_once_per_window: bool = field(
        default_factory=lambda: _flag("ALERT_ONCE_PER_WINDOW", "true")
    )
    alert_cooldown_hours: float = field(
        default_factory=lambda: float(_optional("ALERT_COOLDOWN_HOURS", "0"))
    )

    # --- Timeouts (seconds) ---
    query_timeout_seconds: float = field(
        default_factory=lambda: float(_optional("QUERY_TIMEOUT_SECONDS", "30"))
    )
    webhook_timeout_seconds: int = field(
        default_factory=lambda: int(_optional("WEBHOOK_TIMEOUT_SECONDS", "30"))
    )
    webhook_max_retries: int = field(
        default_factory=lambda: int(_optional("WEBHOOK_MAX_RETRIES", "2"))
    )

    # --- Concurrency ---
    max_workers: int = field(
        default_factory=lambda: int(_optional("MAX_WORKERS", "1"))
    )

    # --- Logging ---
    log_file: str = field(
        default_factory=lambda: _optional("LOG_FILE", "logs/monitor.log")
    )

    def require_database_url(self) -> str:
        """DATABASE_URL is only needed when running against Postgres."""
        return self.database_url or _require("DATABASE_URL")


# Singleton to avoid re-reading env on every call
_config_instance: Config | None = None


def get_config() -> Config:
    """Create and return a validated Config instance (cached)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def reset_config():
    """Reset cached config (for testing)."""
    global _config_instance
    _config_instance = None
