"""
Retry with exponential backoff for single-shot storage requests.

Multipart transfers are not retried here: they resume from their
breakpoint record instead.
"""

import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Tuple, Type, TypeVar

from .errors import RetryableError, StorageServiceError, is_not_exist

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Service codes that will fail the same way on every attempt
NON_RETRYABLE_CODES = frozenset({
    "InvalidArgument",
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "NoSuchUpload",
    "InvalidPart",
    "InvalidPartOrder",
    "InvalidRange",
})

# 4xx statuses worth another attempt: request timeout and throttling
RETRYABLE_CLIENT_STATUSES = (408, 429)


@dataclass
class RetryConfig:
    """
    Backoff policy for storage requests.

    Attributes:
        max_retries: Extra attempts after the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single delay.
        jitter: Scale each delay by a random factor in [0.5, 1.5).
        retry_on: Exception types considered transient.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True
    retry_on: Tuple[Type[Exception], ...] = (StorageServiceError, OSError)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retrying after the zero-indexed ``attempt``."""
        delay = min(self.base_delay * 2 ** attempt, self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay

    def should_retry(self, exception: Exception) -> bool:
        """Vanished entries and client-side request errors are final."""
        if is_not_exist(exception):
            return False
        if isinstance(exception, StorageServiceError):
            if exception.code in NON_RETRYABLE_CODES:
                return False
            status = exception.status_code
            if status is not None and 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
                return False
        return isinstance(exception, self.retry_on)


def retry_call(config: RetryConfig, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Call ``func`` with retries according to ``config``.

    Non-retryable errors are re-raised unchanged so callers can still
    inspect them (for instance to detect a vanished object).

    Raises:
        RetryableError: If every attempt failed with a retryable error.
    """
    name = getattr(func, "__name__", repr(func))
    attempts = config.max_retries + 1
    waited = 0.0
    attempt = 0

    while True:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                logger.debug(f"{name}: giving up on non-retryable error: {e}")
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error(f"{name}: all {attempts} attempts failed")
                raise RetryableError(f"Failed to execute {name}", e, attempts) from e
            delay = config.calculate_delay(attempt - 1)
            waited += delay
            logger.warning(
                f"{name}: attempt {attempt}/{attempts} failed with "
                f"{type(e).__name__}: {e}; next try in {delay:.2f}s"
            )
            time.sleep(delay)
        else:
            if attempt:
                logger.info(f"{name}: recovered after {attempt} retries ({waited:.2f}s waiting)")
            return result


def retry_with_config(config: RetryConfig) -> Callable:
    """
    Decorator form of :func:`retry_call`.

    Example:
        >>> @retry_with_config(RetryConfig(max_retries=2, base_delay=0.5))
        ... def head():
        ...     return storage.head_object("bucket", "key")
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_call(config, func, *args, **kwargs)
        return wrapper
    return decorator
