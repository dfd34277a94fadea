"""Retry/backoff discipline shared by every outbound Slack call."""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.services.errors import SlackRateLimitedError, SlackTransientError

logger = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    deadline: Optional[float] = None  # time.monotonic() value no sleep may cross

    def remaining(self, now: float) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - now, 0.0)


def ack_policy() -> RetryPolicy:
    """Policy for calls on the latency-sensitive acknowledgment path."""
    return RetryPolicy(
        max_retries=settings.ack_retry_max_retries,
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.ack_retry_max_delay_seconds,
    )


def background_policy() -> RetryPolicy:
    """Policy for calls made from worker invocations."""
    return RetryPolicy(
        max_retries=settings.background_retry_max_retries,
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.background_retry_max_delay_seconds,
    )


def compute_backoff(attempt: int, policy: RetryPolicy, rand: Callable[[], float] = random.random) -> float:
    """Capped exponential backoff with jitter in [0.5, 1.0] of the capped value."""
    capped = min(policy.max_delay_seconds, policy.base_delay_seconds * (2**attempt))
    return capped * (0.5 + rand() / 2)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    policy: Optional[RetryPolicy] = None,
    sleep_func=asyncio.sleep,
    clock=time.monotonic,
    **kwargs,
) -> T:
    """Run an outbound call, retrying rate limits and transient failures.

    Rate limits sleep the platform-advised delay, capped by the policy and
    by whatever is left before the policy deadline. Transient failures back
    off exponentially with jitter. Anything else propagates immediately.
    """
    policy = policy or background_policy()
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except SlackRateLimitedError as exc:
            if attempt >= policy.max_retries:
                raise
            delay = min(max(exc.retry_after, 0.0), policy.max_delay_seconds)
            reason = "rate_limited"
            last_error = exc
        except SlackTransientError as exc:
            if attempt >= policy.max_retries:
                raise
            delay = compute_backoff(attempt, policy)
            reason = f"transient:{exc.error}"
            last_error = exc

        remaining = policy.remaining(clock())
        if remaining is not None:
            if remaining <= 0:
                logger.warning(
                    "Retry budget exhausted",
                    extra={"context": {"call": getattr(func, "__name__", str(func)), "attempt": attempt + 1}},
                )
                raise last_error
            delay = min(delay, remaining)

        attempt += 1
        logger.info(
            "Retrying outbound call",
            extra={
                "context": {
                    "call": getattr(func, "__name__", str(func)),
                    "attempt": attempt,
                    "max_retries": policy.max_retries,
                    "delay_seconds": round(delay, 3),
                    "reason": reason,
                }
            },
        )
        await sleep_func(delay)
