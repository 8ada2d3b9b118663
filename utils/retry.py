"""
Retry Executor - bounded exponential backoff around any async operation.

Built on tenacity's AsyncRetrying so the backoff sleep is an asyncio suspension
point and never blocks other work sharing the event loop. Each call gets its
own tenacity RetryCallState, so attempt counters never outlive one invocation.

Usage:
    from utils.retry import RetryPolicy

    policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)
    page = await policy.execute(lambda: source.fetch(date, 2, 1000))
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from utils.config import Settings, settings
from utils.errors import RetriesExhausted


T = TypeVar("T")

OnRetry = Callable[[int, float, BaseException], None]
Sleep = Callable[[float], Awaitable[Any]]


async def execute(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    on_retry: Optional[OnRetry] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_retries + 1`` attempts have failed.

    The delay before attempt ``n + 1`` is ``base_delay * backoff_factor ** (n - 1)``
    seconds, with no jitter. ``on_retry(attempt, delay, error)`` is called after a
    failed attempt and before sleeping. Every ``Exception`` is treated as retryable.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_retries: Retries after the first attempt
        base_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier applied to the delay on each further retry
        on_retry: Observability hook
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The value returned by the first successful attempt

    Raises:
        RetriesExhausted: Wrapping the last error and the number of attempts made
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is None:
            return
        on_retry(
            retry_state.attempt_number,
            retry_state.next_action.sleep,
            retry_state.outcome.exception(),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=backoff_factor),
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep,
        sleep=sleep,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except RetryError as e:
        last_attempt = e.last_attempt
        last_error = last_attempt.exception()
        raise RetriesExhausted(last_attempt.attempt_number, last_error) from last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit retry budget handed to each call site."""

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls, prefix: str, source: Settings = settings) -> "RetryPolicy":
        """Build a policy from ``{prefix}_MAX_RETRIES``, ``_BASE_DELAY`` and ``_BACKOFF_FACTOR``."""
        return cls(
            max_retries=getattr(source, f"{prefix}_MAX_RETRIES"),
            base_delay=getattr(source, f"{prefix}_BASE_DELAY"),
            backoff_factor=getattr(source, f"{prefix}_BACKOFF_FACTOR"),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay applied after ``attempt`` failed (1-based)."""
        return self.base_delay * self.backoff_factor ** (attempt - 1)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Optional[OnRetry] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> T:
        return await execute(
            operation,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            backoff_factor=self.backoff_factor,
            on_retry=on_retry,
            sleep=sleep,
        )
