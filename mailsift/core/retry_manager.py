"""
Backoff Policy - Exponential Backoff with Jitter

One policy object shared by every adapter and the classifier transport,
so retry behavior is uniform and testable without sleeping.
Retries only happen within a single run; transient failures that outlast
the policy surface to the caller and are retried on the next trigger.
"""
import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffPolicy:
    """
    Exponential backoff (base, 2x base, 4x base...) capped at max_delay,
    with symmetric jitter.
    """

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 jitter: float = 0.25,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None,
                 rng: Optional[random.Random] = None):
        """
        Args:
            max_attempts: Total attempts including the first one
            base_delay: Delay before the first retry, in seconds
            max_delay: Ceiling for any single delay
            jitter: Fraction of the delay randomly added or removed (0-1)
            sleep: Awaitable sleep function (injected in tests)
            rng: Random source for jitter
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay in seconds before retry number `attempt`.

        Args:
            attempt: Retry number (0-indexed: 0 is the first retry)

        Returns:
            Delay in seconds, never negative
        """
        delay = min(self.max_delay, (2 ** attempt) * self.base_delay)
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    async def run(self,
                  operation: Callable[[], Awaitable[T]],
                  is_retryable: Callable[[BaseException], bool],
                  operation_name: str = "operation") -> T:
        """
        Execute an async operation, retrying retryable failures.

        Args:
            operation: Zero-argument async callable
            is_retryable: Predicate deciding whether an exception is retried
            operation_name: Name used in log messages

        Returns:
            The operation's result

        Raises:
            The last exception when attempts are exhausted or the error is not retryable
        """
        for attempt in range(self.max_attempts):
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
                return result
            except Exception as e:
                if not is_retryable(e):
                    raise
                if attempt == self.max_attempts - 1:
                    logger.warning(f"{operation_name} failed after {self.max_attempts} attempts: {e}")
                    raise
                delay = self.calculate_delay(attempt)
                logger.info(f"Retry attempt {attempt + 1}/{self.max_attempts - 1} for {operation_name} "
                            f"after {delay:.2f}s delay ({type(e).__name__})")
                await self._sleep(delay)
        raise RuntimeError("unreachable")
