"""Retry utilities for outbound HTTP calls."""

import logging
import time
from functools import wraps

import requests

logger = logging.getLogger(__name__)

# Exceptions that should trigger a retry (transient errors)
_RETRYABLE_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

# HTTP status codes that should trigger a retry
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_with_backoff(max_retries: int = 3, base_delay: float = 2.0):
    """Decorator that retries on transient errors with exponential backoff.

    Retries on:
      - Network errors (ConnectionError, Timeout)
      - Rate limiting (429)
      - Server errors (500, 502, 503, 504)

    Does NOT retry on client errors (400, 401, 403, 404).

    ``max_retries`` may also be passed per call as ``_max_retries`` so a
    client can honour a configured retry budget.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, _max_retries: int | None = None, **kwargs):
            retries = max_retries if _max_retries is None else _max_retries
            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except requests.exceptions.HTTPError as e:
                    status = e.response.status_code if e.response is not None else 0
                    if status not in _RETRYABLE_STATUS_CODES or attempt == retries:
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Retrying %s (HTTP %d, attempt %d/%d, wait %.1fs)",
                        func.__name__, status, attempt + 1, retries, delay,
                    )
                    time.sleep(delay)
                except _RETRYABLE_EXCEPTIONS as e:
                    if attempt == retries:
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Retrying %s (%s, attempt %d/%d, wait %.1fs)",
                        func.__name__, type(e).__name__, attempt + 1, retries, delay,
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
