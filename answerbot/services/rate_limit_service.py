from dataclasses import dataclass
from typing import Optional

from answerbot.config import settings
from answerbot.logging_config import get_logger

logger = get_logger("rate_limit_service")

WINDOW_SECONDS = 60
MSG_RATE_LIMITED = "You're sending questions a bit fast. Please wait a minute and try again."


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int = 0
    limit: int = 0
    retry_after: Optional[int] = None


async def check_user_rate_limit(redis_client, user_id: str, limit: Optional[int] = None) -> RateLimitDecision:
    """Fixed one-minute window per user. Fails open when Redis is unreachable."""
    limit = limit or settings.user_rate_limit_per_minute
    key = f"ratelimit:{user_id}"
    try:
        count = int(await redis_client.incr(key))
        if count == 1:
            await redis_client.expire(key, WINDOW_SECONDS)
    except Exception as exc:
        logger.warning("User rate limit check failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
        return RateLimitDecision(allowed=True, limit=limit)

    if count > limit:
        logger.info(
            "User rate limited",
            extra={"context": {"user_id": user_id, "count": count, "limit": limit}},
        )
        return RateLimitDecision(allowed=False, count=count, limit=limit, retry_after=WINDOW_SECONDS)
    return RateLimitDecision(allowed=True, count=count, limit=limit)
