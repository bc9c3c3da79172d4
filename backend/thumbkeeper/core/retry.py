"""
Centralized retry/backoff utilities.

Used for blob store writes during thumbnail generation. The serving
read path does not retry: repeated read failures are the circuit
breaker's concern.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar, Sequence, Optional

from thumbkeeper.services.blob_store import BlobStoreError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Sequence[type[Exception]] = (Exception,),
    ):
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts (including first)
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Whether to add random jitter to delays
            retryable_exceptions: Exception types that trigger retry
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions)


# Primary thumbnail upload: three attempts with 1s/2s backoff
RETRY_STORAGE_WRITE = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=4.0,
    retryable_exceptions=(BlobStoreError, ConnectionError, TimeoutError, OSError),
)


def calculate_delay(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate delay for a given attempt number.

    Args:
        attempt: Zero-based attempt number
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )

    if config.jitter:
        # ±25% jitter
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig = RETRY_STORAGE_WRITE,
    operation_name: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        operation_name: Name for logging (defaults to func name)
        **kwargs: Keyword arguments for func

    Returns:
        Result of successful function call

    Raises:
        Last exception if all retries fail

    Example:
        await retry_async(
            store.put, key, data, "image/jpeg",
            operation_name="put_primary_thumbnail",
        )
    """
    op_name = operation_name or getattr(func, '__name__', 'operation')
    last_exception: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"{op_name} failed (attempt {attempt + 1}/{config.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}",
                    extra={
                        "event_type": "retry_attempt",
                        "operation": op_name,
                        "attempt": attempt + 1,
                        "max_attempts": config.max_attempts,
                        "delay_seconds": delay,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"{op_name} failed after {config.max_attempts} attempts: {e}",
                    extra={
                        "event_type": "retry_exhausted",
                        "operation": op_name,
                        "attempts": config.max_attempts,
                        "final_error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

    if last_exception is not None:
        raise last_exception
    raise RuntimeError(f"{op_name} failed with no exception captured")

