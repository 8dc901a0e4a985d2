"""
Retry Executor - the single retry authority for storage writes and engine calls.

Attempt ``n`` that fails waits ``min(base_delay * backoff_factor ** (n - 1), max_delay)``
before attempt ``n + 1``. With ``jitter`` on, up to 10% of that delay is added.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from ..config import IngestConfig
from ..errors import RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """
        Delay after failed attempt ``attempt`` (1-based).

        Returns:
            Delay capped at max_delay, plus up to 10% when jitter is on
        """
        if attempt <= 0:
            return 0.0
        delay = min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += delay * 0.1 * rand()
        return delay

    def delays(self) -> List[float]:
        """Delay schedule for every attempt up to max_attempts."""
        return [self.delay_for(n) for n in range(1, self.max_attempts + 1)]

    @classmethod
    def from_config(cls, config: IngestConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retry_attempts,
            base_delay=config.retry_base_delay_ms / 1000,
            max_delay=config.retry_max_delay_ms / 1000,
            backoff_factor=config.retry_backoff_factor,
            jitter=config.retry_jitter,
        )


class RetryExecutor:
    """
    Runs an async operation, retrying transient failures with exponential backoff.

    Usage:
        executor = RetryExecutor(RetryPolicy.from_config(config))
        await executor.execute(lambda: store.put(key, data), name=f"put {key}")
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._policy = policy or RetryPolicy()
        self._retry_on = retry_on
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        backoff_factor: Optional[float] = None,
    ) -> T:
        """
        Execute ``operation`` until it succeeds or attempts run out.

        Non-retryable exceptions propagate immediately.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
        """
        policy = self._policy
        overrides = {
            k: v for k, v in (
                ("max_attempts", max_attempts),
                ("base_delay", base_delay),
                ("max_delay", max_delay),
                ("backoff_factor", backoff_factor),
            ) if v is not None
        }
        if overrides:
            policy = replace(policy, **overrides)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except self._retry_on as exc:
                if attempt >= policy.max_attempts:
                    logger.error("[retry] %s failed after %d attempt(s): %s", name, attempt, exc)
                    raise RetryExhaustedError(
                        f"{name} failed after {attempt} attempt(s): {exc}",
                        cause=exc,
                        attempts=attempt,
                    ) from exc
                delay = policy.delay_for(attempt)
                logger.warning(
                    "[retry] %s attempt %d/%d failed (%s), retrying in %.2fs",
                    name, attempt, policy.max_attempts, exc, delay,
                )
                await self._sleep(delay)

    execute_with_retry = execute
