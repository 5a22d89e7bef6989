"""
Bounded retry for fetching cluster material that propagates asynchronously.

The policy is a pure value and the decision of what to do after a failure is a
pure function (next_step), so the schedule can be tested without timers.
fetch_with_retry is the async driver that applies it.

Classification:
- retryable (policy.retry_on, default TransientError and ConnectionError):
  sleep per policy and try again
- anything else: propagate immediately, no retry
- asyncio.CancelledError: always propagates untouched
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union

from encwheel.errors import ExhaustedError, OperationCancelledError, TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget for one kind of remote material.

    Attributes:
        max_attempts: Total invocations allowed (including the first)
        delay_seconds: Delay before the first retry
        backoff_multiplier: Factor applied to the delay after each retry (1.0 = fixed)
        max_delay_seconds: Upper bound on a single delay
        retry_on: Exception types treated as transient
    """
    max_attempts: int = 10
    delay_seconds: float = 0.5
    backoff_multiplier: float = 1.0
    max_delay_seconds: Optional[float] = None
    retry_on: tuple[type[BaseException], ...] = (TransientError, ConnectionError)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {self.delay_seconds}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-indexed) failed attempt."""
        delay = self.delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retry_on)


@dataclass(frozen=True)
class Retry:
    """Wait delay seconds, then invoke again."""
    delay: float


@dataclass(frozen=True)
class Stop:
    """Give up. exhausted distinguishes a spent budget from a fatal error."""
    error: BaseException
    exhausted: bool


def next_step(policy: RetryPolicy, attempt: int, error: BaseException) -> Union[Retry, Stop]:
    """
    Decide what follows a failed attempt.

    Args:
        policy: The retry policy
        attempt: Number of the attempt that just failed (1-indexed)
        error: The failure it raised

    Returns:
        Retry(delay) if another attempt is allowed, else Stop
    """
    if not policy.is_retryable(error):
        return Stop(error=error, exhausted=False)
    if attempt >= policy.max_attempts:
        return Stop(error=error, exhausted=True)
    return Retry(delay=policy.delay_for(attempt))


async def fetch_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    cancel_event: Optional[asyncio.Event] = None,
    description: str = "operation",
) -> T:
    """
    Invoke operation until it succeeds, fails fatally, or the budget is spent.

    Args:
        operation: Zero-argument coroutine factory
        policy: Retry policy
        sleep: Sleep implementation (injected in tests)
        cancel_event: When set, the loop stops before its next sleep
        description: Label for log messages

    Returns:
        The operation's result

    Raises:
        ExhaustedError: After policy.max_attempts transient failures
        OperationCancelledError: If cancel_event is set before a retry
        Exception: Any non-retryable failure, unchanged
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            step = next_step(policy, attempt, e)
            if isinstance(step, Stop):
                if not step.exhausted:
                    raise
                logger.error(f"{description}: all {attempt} attempts failed: {e}")
                raise ExhaustedError(
                    f"{description} failed after {attempt} attempts: {e}",
                    attempts=attempt,
                    last_error=e,
                ) from e

            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(
                    f"{description} cancelled after {attempt} attempts",
                    attempts=attempt,
                    last_error=e,
                ) from e

            logger.warning(
                f"{description}: attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {step.delay:.2f}s..."
            )
            await _sleep_unless_cancelled(sleep, step.delay, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(
                    f"{description} cancelled while waiting to retry (after {attempt} attempts)",
                    attempts=attempt,
                    last_error=e,
                ) from e


async def _sleep_unless_cancelled(
    sleep: Callable[[float], Awaitable[None]],
    delay: float,
    cancel_event: Optional[asyncio.Event],
) -> None:
    """Sleep for delay, waking early if cancel_event is set."""
    if cancel_event is None:
        await sleep(delay)
        return

    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
