import asyncio
import random
import structlog
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from proofsnap import config
from proofsnap.core.errors import ProofSnapError

logger = structlog.get_logger()

T = TypeVar("T")

__all__ = ["RetryPolicy", "is_transient", "with_retry", "default_policy"]


def is_transient(error: BaseException) -> bool:
    """Default retry predicate: only errors tagged transient when raised."""
    return isinstance(error, ProofSnapError) and error.transient


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for a single orchestrated call."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retry_predicate: Callable[[BaseException], bool] = field(default=is_transient)
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


def default_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        initial_delay=config.RETRY_INITIAL_DELAY,
        max_delay=config.RETRY_MAX_DELAY,
        backoff_multiplier=config.RETRY_BACKOFF_MULTIPLIER,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    The last error is re-raised unchanged when the predicate refuses it or the
    attempts are exhausted. The backoff wait only suspends the calling task.
    """
    policy = policy or default_policy()
    delay = policy.initial_delay

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            retryable = policy.retry_predicate(e)
            logger.warning("Attempt failed",
                           operation=name,
                           attempt=attempt,
                           max_attempts=policy.max_attempts,
                           retryable=retryable,
                           error_kind=getattr(getattr(e, "kind", None), "value", type(e).__name__),
                           error=str(e))

            if attempt >= policy.max_attempts or not retryable:
                raise

            wait = min(delay, policy.max_delay)
            if policy.jitter:
                wait += random.uniform(0, policy.jitter * wait)
            await sleep(wait)
            delay *= policy.backoff_multiplier

    raise RuntimeError("unreachable")
