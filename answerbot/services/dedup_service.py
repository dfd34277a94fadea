"""Event deduplication: local best-effort cache in front of Redis SET NX.

The local tier only remembers keys this process has already seen and can
therefore only ever answer "duplicate". It resets on cold start and is
never consulted to admit an event: admission always comes from the
shared store.
"""

import time
from typing import Optional

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.services.errors import DedupUnavailable

logger = get_logger("dedup_service")

DEDUP_MARKER = "1"


def build_dedup_key(event_id: Optional[str], timestamp: Optional[str], channel_id: Optional[str]) -> Optional[str]:
    if event_id and event_id.strip():
        return f"event:{event_id.strip()}"
    if timestamp and channel_id:
        return f"event:{timestamp}:{channel_id}"
    return None


class LocalDedupCache:
    def __init__(self, max_size: int = 5000, clock=time.time):
        self.max_size = max_size
        self.clock = clock
        self._entries: dict[str, float] = {}

    def _purge(self, now_ts: float) -> None:
        if len(self._entries) < self.max_size:
            return
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now_ts]
        for key in expired:
            self._entries.pop(key, None)
        # Still full of live keys: drop the oldest insertions.
        overflow = len(self._entries) - self.max_size + 1
        for key in list(self._entries)[: max(overflow, 0)]:
            self._entries.pop(key, None)

    def seen(self, key: str) -> bool:
        expires_at = self._entries.get(key)
        if expires_at is None:
            return False
        if expires_at <= self.clock():
            self._entries.pop(key, None)
            return False
        return True

    def remember(self, key: str, ttl_seconds: int) -> None:
        now_ts = self.clock()
        self._purge(now_ts)
        self._entries[key] = now_ts + ttl_seconds

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DedupStore:
    def __init__(
        self,
        redis_client,
        *,
        ttl_seconds: Optional[int] = None,
        local_cache: Optional[LocalDedupCache] = None,
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.dedup_ttl_seconds
        self.local_cache = local_cache if local_cache is not None else _process_cache

    async def claim(self, key: str) -> bool:
        """Atomically admit ``key``. True on first sight within the TTL, False for a duplicate."""
        if self.local_cache.seen(key):
            logger.info("Duplicate event (local cache)", extra={"context": {"dedup_key": key}})
            return False

        try:
            was_set = await self.redis.set(key, DEDUP_MARKER, ex=self.ttl_seconds, nx=True)
        except Exception as exc:
            logger.error(
                "Dedup store unavailable",
                extra={"context": {"dedup_key": key, "error": str(exc)}},
            )
            raise DedupUnavailable(str(exc)) from exc

        self.local_cache.remember(key, self.ttl_seconds)
        if not was_set:
            logger.info("Duplicate event (shared store)", extra={"context": {"dedup_key": key}})
            return False
        return True


_process_cache = LocalDedupCache(max_size=settings.dedup_local_cache_size)


def get_process_cache() -> LocalDedupCache:
    return _process_cache
