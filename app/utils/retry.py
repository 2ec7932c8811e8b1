"""
Retry utilities with exponential backoff.

Used by the POS provider clients (async page fetches) and by the backfill
scripts (whole sync runs, which are safe to repeat because the ledger
upsert is idempotent).
"""
import asyncio
import functools
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Type

from sqlalchemy.exc import OperationalError

from app.exceptions import ProviderAPIError, SyncTimeoutError
from app.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Network errors, lock contention and budget overruns are all worth another try
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    OperationalError,
    SyncTimeoutError,
)

RETRYABLE_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add up to 25% randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)

    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
) -> bool:
    """
    Check if an error is retryable.

    Provider API errors are retried only for rate limiting and 5xx codes;
    anything else falls back to matching the message text.
    """
    if isinstance(error, ProviderAPIError):
        return error.status_code in RETRYABLE_STATUS_CODES

    if isinstance(error, retryable_exceptions):
        return True

    error_str = str(error).lower()

    if "rate limit" in error_str or "too many requests" in error_str:
        return True

    if "timeout" in error_str or "timed out" in error_str:
        return True

    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True

    return False


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Async decorator for retrying operations with exponential backoff.

    Usage:
        @retry_async(max_attempts=3)
        async def fetch_page():
            ...
    """
    def decorator(func: Callable):
        last_stats = [None]

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            stats = RetryStats()
            last_stats[0] = stats

            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    stats.record_attempt()
                    stats.success = True
                    if attempt > 1:
                        log.info(
                            f"{func.__name__} succeeded on attempt {attempt} "
                            f"after {stats.total_delay_seconds:.1f}s total delay"
                        )
                    return result

                except Exception as e:
                    if attempt >= max_attempts or not is_retryable_error(e, retryable_exceptions):
                        stats.record_attempt(error=e)
                        log.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise

                    delay = calculate_backoff(attempt, base_delay=base_delay, max_delay=max_delay)
                    stats.record_attempt(error=e, delay=delay)
                    log.warning(
                        f"{func.__name__} attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    if on_retry:
                        on_retry(attempt, e, delay)

                    await asyncio.sleep(delay)

        wrapper.get_retry_stats = lambda: last_stats[0]
        return wrapper

    return decorator


def retry_sync(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep
):
    """
    Sync decorator for retrying operations with exponential backoff.

    Same as retry_async but for blocking callables such as a whole
    sync_range chunk.
    """
    def decorator(func: Callable):
        last_stats = [None]

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            stats = RetryStats()
            last_stats[0] = stats

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    stats.record_attempt()
                    stats.success = True
                    if attempt > 1:
                        log.info(
                            f"{func.__name__} succeeded on attempt {attempt} "
                            f"after {stats.total_delay_seconds:.1f}s total delay"
                        )
                    return result

                except Exception as e:
                    if attempt >= max_attempts or not is_retryable_error(e, retryable_exceptions):
                        stats.record_attempt(error=e)
                        log.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise

                    delay = calculate_backoff(attempt, base_delay=base_delay, max_delay=max_delay)
                    stats.record_attempt(error=e, delay=delay)
                    log.warning(
                        f"{func.__name__} attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    if on_retry:
                        on_retry(attempt, e, delay)

                    sleep(delay)

        wrapper.get_retry_stats = lambda: last_stats[0]
        return wrapper

    return decorator
