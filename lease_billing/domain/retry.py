"""Retry policy value object and the runner that applies it to async work"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Backoff for attempt n (1-based) is base * factor^(n-1), capped at
    max_backoff: 1s, 2s, 4s, 8s, ... with the defaults.
    """

    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    max_backoff: float = 30.0
    retryable: Tuple[Type[BaseException], ...] = ()

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (self.backoff_factor ** (attempt - 1)), self.max_backoff)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not isinstance(error, self.retryable):
            return False
        # Errors may veto a retry themselves (e.g. a definitive gateway decline)
        return getattr(error, "retryable", True)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    task_name: str = "task",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or the policy gives up.

    The last error is re-raised once attempts are exhausted or the error is not
    retryable under the policy.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not policy.should_retry(e, attempt):
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                f"{task_name} failed, retrying",
                extra={"task": task_name, "attempt": attempt, "backoff_seconds": delay, "error": str(e)},
            )
            await sleep(delay)
