"""Retry helpers for vendor calls, built on tenacity."""
from __future__ import annotations

from functools import wraps
from typing import Callable, Optional, ParamSpec, Type, TypeVar

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from core.exceptions import (
    ExternalServiceError,
    RateLimitError,
    ServiceUnavailableError,
)
from core.logging_config import get_logger

LOGGER = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    max_delay_seconds: float = 30,
    retry_exceptions: tuple[Type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        ServiceUnavailableError,
    ),
    exponential_base: float = 2,
    min_wait: float = 1,
    max_wait: float = 10,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator to add retry logic to a function.

    Args:
        max_attempts: Maximum number of attempts, including the first.
        max_delay_seconds: Maximum total time to spend retrying.
        retry_exceptions: Tuple of exception types to retry on.
        exponential_base: Multiplier for exponential backoff.
        min_wait: Minimum wait time between retries.
        max_wait: Maximum wait time between retries.

    Returns:
        Decorated function with retry logic. The last exception is re-raised
        once attempts are exhausted.

    Example:
        @with_retry(max_attempts=2, retry_exceptions=(ServiceUnavailableError,))
        def call_vendor():
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @retry(
            retry=retry_if_exception_type(retry_exceptions),
            stop=stop_after_attempt(max_attempts) | stop_after_delay(max_delay_seconds),
            wait=wait_exponential(multiplier=exponential_base, min=min_wait, max=max_wait),
            before_sleep=before_sleep_log(LOGGER, log_level=20),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return func(*args, **kwargs)

        return wrapper

    return decorator


def raise_for_vendor_status(
    response: httpx.Response,
    service: str,
    error_class: Type[ExternalServiceError] = ExternalServiceError,
    message: Optional[str] = None,
) -> None:
    """
    Translate a vendor HTTP status into the application error hierarchy.

    429 becomes RateLimitError, 5xx becomes ServiceUnavailableError (both
    worth retrying), any other non-2xx becomes ``error_class``.
    """
    status = response.status_code
    if status < 400:
        return
    detail = message or f"{service} returned HTTP {status}"
    if status == 429:
        raise RateLimitError(detail)
    if status >= 500:
        raise ServiceUnavailableError(detail)
    raise error_class(detail)


__all__ = [
    "with_retry",
    "raise_for_vendor_status",
]
