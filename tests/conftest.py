import time
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from answerbot.schemas.job import ChatMessageHandle, Job
from answerbot.services.dedup_service import LocalDedupCache


class FakeRedis:
    """In-memory stand-in for the redis.asyncio subset the service uses."""

    def __init__(self, clock=time.time):
        self.clock = clock
        self.data: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.expiry: dict[str, float] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _expire_stale(self, key: str) -> None:
        expires_at = self.expiry.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def ping(self):
        self._check()
        return True

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        self._check()
        self._expire_stale(key)
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = self.clock() + ex
        return True

    async def get(self, key: str):
        self._check()
        self._expire_stale(key)
        return self.data.get(key)

    async def delete(self, *keys: str):
        self._check()
        removed = 0
        for key in keys:
            for store in (self.data, self.lists, self.hashes):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed

    async def incr(self, key: str):
        self._check()
        self._expire_stale(key)
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int):
        self._check()
        self.expiry[key] = self.clock() + seconds
        return True

    async def rpush(self, key: str, *values: str):
        self._check()
        items = self.lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lpush(self, key: str, *values: str):
        self._check()
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lmove(self, source: str, destination: str, src: str = "LEFT", dest: str = "RIGHT"):
        self._check()
        items = self.lists.get(source) or []
        if not items:
            return None
        value = items.pop(0) if src == "LEFT" else items.pop()
        target = self.lists.setdefault(destination, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def lrem(self, key: str, count: int, value: str):
        self._check()
        items = self.lists.get(key) or []
        removed = 0
        kept = []
        for item in items:
            if item == value and (count == 0 or removed < abs(count)):
                removed += 1
                continue
            kept.append(item)
        self.lists[key] = kept
        return removed

    async def llen(self, key: str):
        self._check()
        return len(self.lists.get(key) or [])

    async def lrange(self, key: str, start: int, end: int):
        self._check()
        items = self.lists.get(key) or []
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    async def hset(self, name: str, key: str, value: str):
        self._check()
        bucket = self.hashes.setdefault(name, {})
        is_new = key not in bucket
        bucket[key] = value
        return int(is_new)

    async def hget(self, name: str, key: str):
        self._check()
        return (self.hashes.get(name) or {}).get(key)

    async def hdel(self, name: str, *keys: str):
        self._check()
        bucket = self.hashes.get(name) or {}
        return sum(1 for key in keys if bucket.pop(key, None) is not None)

    async def hgetall(self, name: str):
        self._check()
        return dict(self.hashes.get(name) or {})

    async def hlen(self, name: str):
        self._check()
        return len(self.hashes.get(name) or {})


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def local_cache():
    return LocalDedupCache(max_size=100)


@pytest.fixture
def mock_slack():
    """RetryingSlackService double that records posts and edits."""
    slack = AsyncMock()
    slack.post_message.return_value = ChatMessageHandle(channel="C123", ts="1700000000.000200")
    slack.update_message.return_value = {"ok": True}
    return slack


@pytest.fixture
def sample_job():
    return Job(
        channelId="C123",
        userId="U456",
        questionText="what is X?",
        eventTs="1700000000.000100",
        channelType="channel",
        useStreaming=False,
    )
