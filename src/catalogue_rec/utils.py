"""Utility functions and decorators for catalogue_rec."""

import time
import logging
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.05,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    retry_if: Callable[[BaseException], bool] | None = None,
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Maximum number of attempts
        initial_delay: Delay in seconds before the second attempt
        backoff_factor: Multiplier for delay between retries
        exceptions: Exception types that may be retried
        retry_if: Optional predicate; exceptions it rejects are raised immediately

    Example:
        @retry_with_backoff(exceptions=(sqlite3.OperationalError,), retry_if=is_locked)
        def read_rows():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay

            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_retries}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper
    return decorator


def decade_label(year: int | None) -> str | None:
    if year is None:
        return None
    return f"{(year // 10) * 10}s"
