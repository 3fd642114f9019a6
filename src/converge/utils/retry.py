"""Retry strategy with exponential backoff for provider operations."""

import time
import random
from typing import Callable, TypeVar, Optional
from functools import wraps

from converge.utils.errors import ProviderError
from converge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry for transient provider errors."""

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
    )

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Total attempts including the first call
            base_delay: Delay in seconds before the first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function, replaceable in tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger another attempt.

        Args:
            error: The exception that occurred
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            True if the error is transient and attempts remain
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(error, ProviderError):
            return error.transient

        return isinstance(error, self.RETRYABLE_EXCEPTIONS)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        # Up to 10% jitter
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        on_retry: Optional[Callable[[int, Exception], None]] = None,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            on_retry: Optional callback invoked with (attempt, error) before sleeping
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if it is permanent or attempts are exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func(*args, **kwargs)
                if attempt > 1:
                    logger.info(f"Operation succeeded on attempt {attempt}")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt >= self.max_attempts and attempt > 1:
                        logger.error(f"All {self.max_attempts} attempts exhausted: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                if on_retry:
                    on_retry(attempt, e)
                self._sleep(delay)


def with_retry(
    max_attempts: int = 4,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Example:
        @with_retry(max_attempts=3, base_delay=2.0)
        def bind_role(client, member):
            return client.add_binding(member)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
