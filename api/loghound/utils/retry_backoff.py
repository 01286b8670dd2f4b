from __future__ import annotations
import asyncio
import random
from typing import Awaitable, Callable, TypeVar, Optional
from functools import wraps
from loghound.obs.logging_setup import get_logger
from loghound.config import MAX_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY
from loghound.search.errors import BackendThrottled, BackendTransient

logger = get_logger(__name__)
T = TypeVar('T')

class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on_exceptions: tuple = (BackendThrottled, BackendTransient)
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on_exceptions = retry_on_exceptions

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Add up to 20% jitter
            jitter_amount = delay * 0.2 * random.random()
            delay += jitter_amount

        return delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether ``error`` on the given zero-based attempt deserves another try."""
        return isinstance(error, self.retry_on_exceptions) and attempt < self.max_retries

def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None
):
    """
    Decorator for retry with exponential backoff.

    Args:
        config: RetryConfig instance, uses default if None
        operation_name: Name for logging, uses function name if None
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(f"Retry successful for {op_name}",
                                   attempt=attempt,
                                   total_attempts=attempt + 1)

                    return result

                except config.retry_on_exceptions as e:
                    if not config.should_retry(e, attempt):
                        logger.error(f"All {attempt + 1} attempts failed for {op_name}",
                                   error=str(e))
                        raise

                    delay = config.calculate_delay(attempt)
                    attempt += 1
                    logger.warning(f"Attempt {attempt} failed for {op_name}",
                                 error=str(e),
                                 delay_seconds=round(delay, 2),
                                 will_retry=True)
                    await asyncio.sleep(delay)

        return async_wrapper

    return decorator

# Predefined retry configurations
DEFAULT_BACKEND_RETRY = RetryConfig()

LISTING_RETRY = RetryConfig(
    max_retries=5,
    base_delay=0.5,
    max_delay=10.0,
)

async def retry_async_operation(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    operation_name: str = "async_operation"
) -> T:
    """Retry an async operation with backoff."""

    @retry_with_backoff(config, operation_name)
    async def wrapper():
        return await operation()

    return await wrapper()
