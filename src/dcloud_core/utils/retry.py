"""Bounded retry and polling helpers.

All network-bound waits in the orchestrator go through these two helpers so
that none of them can block forever.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt count and exponential backoff schedule.

    Attributes:
        attempts: Total number of attempts (not retries)
        base_delay: Delay after the first failed attempt, in seconds
        factor: Multiplier applied to the delay after each further failure
        max_delay: Upper bound for a single delay
    """

    attempts: int = 5
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> list[float]:
        """All delays between attempts, e.g. [2, 4, 8, 16] for the defaults."""
        return [self.delay_for(i) for i in range(1, self.attempts)]

    @classmethod
    def fixed(cls, attempts: int, interval: float) -> "RetryPolicy":
        """Constant interval polling."""
        return cls(attempts=attempts, base_delay=interval, factor=1.0)


@dataclass
class RetryOutcome:
    """Result of retry_async()."""

    succeeded: bool
    attempts: int
    value: Any = None
    error: BaseException | None = None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_success: Callable[[T], bool] = lambda _: True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_failure: Callable[[int, T | None, BaseException | None], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> RetryOutcome:
    """Run ``operation`` until ``is_success`` accepts its result.

    Exceptions listed in ``retry_on`` count as a failed attempt; anything else
    propagates. Never raises once attempts are exhausted: the caller decides
    what exhaustion means.
    """
    last_value: T | None = None
    last_error: BaseException | None = None

    for attempt in range(1, policy.attempts + 1):
        try:
            last_value = await operation()
            last_error = None
            if is_success(last_value):
                return RetryOutcome(succeeded=True, attempts=attempt, value=last_value)
        except retry_on as e:
            last_value = None
            last_error = e

        if on_failure is not None:
            on_failure(attempt, last_value, last_error)

        if attempt < policy.attempts:
            await sleep(policy.delay_for(attempt))

    return RetryOutcome(
        succeeded=False,
        attempts=policy.attempts,
        value=last_value,
        error=last_error,
    )


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    *,
    interval: float,
    timeout: float,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Poll ``probe`` every ``interval`` seconds until ``is_done`` or timeout.

    Raises:
        TimeoutError: If the deadline passes first. The last observed value
            is attached as ``last_value``.
    """
    deadline = clock() + timeout
    while True:
        value = await probe()
        if is_done(value):
            return value
        if clock() + interval > deadline:
            error = TimeoutError(f"Condition not met within {timeout:.0f}s")
            error.last_value = value  # type: ignore[attr-defined]
            raise error
        await sleep(interval)
