"""
Bounded retry for eventually-consistent Bitrix24 reads.

Bitrix24 frequently accepts an activation and then reports the line as
inactive for a second or two. Rather than sprinkling sleep-then-retry loops
through the handlers, every "did it take effect yet?" check goes through
``retry_until``: a fixed number of attempts with a fixed or capped
exponential delay between them.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from thoth.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between."""
    max_attempts: int = 2
    delay_seconds: float = 1.5
    backoff: float = 1.0  # 1.0 = fixed delay
    max_delay_seconds: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.delay_seconds * (self.backoff ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    @classmethod
    def verification(cls) -> "RetryPolicy":
        """Policy used to confirm connector activation."""
        return cls(
            max_attempts=max(1, settings.BITRIX24_VERIFY_MAX_ATTEMPTS),
            delay_seconds=settings.BITRIX24_VERIFY_RETRY_DELAY_SECONDS,
        )


async def retry_until(
    operation: Callable[[int], Awaitable[T]],
    accept: Callable[[T], bool],
    policy: RetryPolicy,
    between: Optional[Callable[[int], Awaitable[None]]] = None,
    sleep: Sleep = asyncio.sleep,
) -> Tuple[T, int]:
    """
    Run ``operation`` until ``accept`` returns True or attempts run out.

    Args:
        operation: Called with the 1-based attempt number.
        accept: Decides whether the operation's result is final.
        policy: Attempt count and delays.
        between: Optional corrective step run before each retry's delay
            (e.g. re-sending an activation before re-verifying).
        sleep: Injected for tests.

    Returns:
        (last result, attempts used)
    """
    attempt = 1
    result = await operation(attempt)
    while not accept(result) and attempt < policy.max_attempts:
        attempt += 1
        if between is not None:
            await between(attempt)
        delay = policy.delay_for(attempt - 1)
        logger.info(f"Re-checking in {delay}s (attempt {attempt}/{policy.max_attempts})")
        await sleep(delay)
        result = await operation(attempt)
    return result, attempt
