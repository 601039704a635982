"""
changefeed_verify/retry.py - Retry Combinator

Wraps one logical store operation. The caller supplies the classifier;
the combinator never decides on its own what is safe to retry.

- Exponential backoff with jitter between attempts
- Non-transient errors propagate unchanged
- Bounded budgets end in RetryExhausted
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff:
    """Exponential backoff, jittered by an injected rng."""

    def __init__(self, min_wait: float = 0.01, max_wait: float = 1.0,
                 rng: Optional[random.Random] = None):
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (1-indexed).

        Full exponential step capped at max_wait, then scaled by a
        random factor in [0.5, 1.0).
        """
        base = min(self.min_wait * (2 ** min(attempt, 32)), self.max_wait)
        return base * (0.5 + self.rng.random() / 2)


def _error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if code is None:
        return type(error).__name__
    return getattr(code, "value", str(code))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    is_transient: Callable[[BaseException], bool],
    backoff: Backoff,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    describe: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or fails with a non-transient error.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        is_transient: Classifier deciding whether an error may be retried
        backoff: Delay policy between attempts
        max_attempts: Attempt budget, None for unbounded
        sleep: Awaitable delay (injected by tests)
        describe: Name used in log lines

    Returns:
        The operation's result

    Raises:
        RetryExhausted: After max_attempts transient failures
        Exception: Any non-transient error, unchanged
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e):
                raise
            attempt += 1
            error_code = _error_code(e)
            if max_attempts is not None and attempt >= max_attempts:
                raise RetryExhausted(
                    f"{describe} failed after {attempt} attempts. Last error: {error_code} - {e}",
                    error_code=error_code,
                    attempts=attempt,
                    last_error=str(e),
                ) from e
            wait_time = backoff.delay(attempt)
            logger.warning(
                "%s: retry %d after %.3fs (%s)", describe, attempt, wait_time, error_code
            )
            await sleep(wait_time)
