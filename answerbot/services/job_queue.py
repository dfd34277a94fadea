from __future__ import annotations

import json
import time
import uuid
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.schemas.job import ChatMessageHandle, Job, QueueMessage
from answerbot.services.alert_service import alert_critical
from answerbot.services.errors import QueueUnavailable

logger = get_logger("job_queue")

MAX_POISON_SKIPS = 5


def _new_entry(job: dict[str, Any], *, deliveries: int = 0, requeues: int = 0, now: float) -> dict[str, Any]:
    return {
        "token": uuid.uuid4().hex,
        "job": job,
        "enqueued_at": now,
        "deliveries": deliveries,
        "requeues": requeues,
    }


class JobQueue:
    """Redis-list job queue with deliver/verify handoff.

    Keys for queue ``Q``: ``queue:Q:waiting`` (FIFO), ``queue:Q:processing``
    (delivered, not yet verified), ``queue:Q:deliveries`` (token -> delivery
    record) and ``queue:Q:dead``.
    """

    def __init__(
        self,
        redis_client,
        *,
        name: Optional[str] = None,
        concurrency_limit: Optional[int] = None,
        visibility_timeout_seconds: Optional[float] = None,
        max_deliveries: Optional[int] = None,
        failed_requeue_limit: Optional[int] = None,
        clock=time.time,
    ):
        self.redis = redis_client
        self.name = name or settings.queue_name
        self.concurrency_limit = concurrency_limit or settings.queue_concurrency_limit
        self.visibility_timeout_seconds = (
            visibility_timeout_seconds
            if visibility_timeout_seconds is not None
            else settings.queue_visibility_timeout_seconds
        )
        self.max_deliveries = max_deliveries or settings.queue_max_deliveries
        self.failed_requeue_limit = (
            failed_requeue_limit if failed_requeue_limit is not None else settings.failed_job_requeue_limit
        )
        self.clock = clock

    @property
    def waiting_key(self) -> str:
        return f"queue:{self.name}:waiting"

    @property
    def processing_key(self) -> str:
        return f"queue:{self.name}:processing"

    @property
    def deliveries_key(self) -> str:
        return f"queue:{self.name}:deliveries"

    @property
    def dead_key(self) -> str:
        return f"queue:{self.name}:dead"

    async def enqueue(self, job: Job) -> bool:
        entry = _new_entry(job.model_dump(), now=self.clock())
        try:
            await self.redis.rpush(self.waiting_key, json.dumps(entry))
        except Exception as exc:
            logger.error(
                "Failed to enqueue job",
                extra={"context": {"job_id": job.job_id, "queue": self.name, "error": str(exc)}},
            )
            return False
        logger.info(
            "Job enqueued",
            extra={"context": {"job_id": job.job_id, "channel": job.channelId, "token": entry["token"]}},
        )
        return True

    async def dequeue(self) -> Optional[QueueMessage]:
        """Deliver the head job, or None when empty or at the concurrency ceiling. Never blocks."""
        for _ in range(MAX_POISON_SKIPS):
            try:
                raw = await self._move_head_to_processing()
            except QueueUnavailable:
                raise
            except Exception as exc:
                raise QueueUnavailable(str(exc)) from exc
            if raw is None:
                return None

            message = await self._deliver(raw)
            if message is not None:
                return message
        return None

    async def _move_head_to_processing(self) -> Optional[str]:
        in_flight = await self.redis.llen(self.processing_key)
        if in_flight >= self.concurrency_limit:
            logger.info(
                "Queue at concurrency limit",
                extra={"context": {"in_flight": in_flight, "limit": self.concurrency_limit}},
            )
            return None

        raw = await self.redis.lmove(self.waiting_key, self.processing_key, "LEFT", "RIGHT")
        if raw is None:
            return None

        # Another consumer may have taken the last slot between the check and the move.
        if await self.redis.llen(self.processing_key) > self.concurrency_limit:
            await self.redis.lrem(self.processing_key, 1, raw)
            await self.redis.lpush(self.waiting_key, raw)
            logger.info("Lost race for last concurrency slot, job returned to queue")
            return None
        return raw

    async def _deliver(self, raw: str) -> Optional[QueueMessage]:
        try:
            entry = json.loads(raw)
            job = Job.model_validate(entry["job"])
            token = entry["token"]
        except (ValueError, KeyError, TypeError, PydanticValidationError) as exc:
            logger.error("Unparseable queue entry moved to dead letter", extra={"context": {"error": str(exc)}})
            await self._bury(raw, reason=f"unparseable:{exc}"[:200])
            return None

        deliveries = int(entry.get("deliveries") or 0) + 1
        record = {
            "raw": raw,
            "delivered_at": self.clock(),
            "deliveries": deliveries,
            "failed": False,
            "stubTs": job.stubTs,
        }
        try:
            await self.redis.hset(self.deliveries_key, token, json.dumps(record))
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

        logger.info(
            "Job delivered",
            extra={"context": {"job_id": job.job_id, "token": token, "deliveries": deliveries}},
        )
        return QueueMessage(
            token=token,
            job=job,
            deliveries=deliveries,
            requeues=int(entry.get("requeues") or 0),
        )

    async def _get_record(self, token: str) -> Optional[dict[str, Any]]:
        record_raw = await self.redis.hget(self.deliveries_key, token)
        if not record_raw:
            return None
        return json.loads(record_raw)

    async def verify(self, token: str) -> bool:
        """Remove a delivered message for good. False when the token is unknown."""
        try:
            record = await self._get_record(token)
            if record is None:
                logger.warning("Verify for unknown delivery token", extra={"context": {"token": token}})
                return False
            removed = await self.redis.lrem(self.processing_key, 1, record["raw"])
            await self.redis.hdel(self.deliveries_key, token)
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

        logger.info("Job verified", extra={"context": {"token": token, "removed": removed}})
        return removed > 0

    async def attach_handle(self, token: str, handle: ChatMessageHandle) -> bool:
        """Persist the placeholder handle so a redelivery edits the same message."""
        try:
            record = await self._get_record(token)
            if record is None:
                return False
            record["stubTs"] = handle.ts
            await self.redis.hset(self.deliveries_key, token, json.dumps(record))
        except Exception as exc:
            logger.warning(
                "Failed to persist message handle",
                extra={"context": {"token": token, "error": str(exc)}},
            )
            return False
        return True

    async def mark_failed(self, token: str) -> bool:
        """Flag a delivery as terminally failed. It stays unverified."""
        try:
            record = await self._get_record(token)
            if record is None:
                return False
            record["failed"] = True
            await self.redis.hset(self.deliveries_key, token, json.dumps(record))
        except Exception as exc:
            logger.warning("Failed to mark delivery failed", extra={"context": {"token": token, "error": str(exc)}})
            return False
        return True

    async def reclaim_stale(self) -> dict[str, int]:
        """Return failed and stale in-flight deliveries to the queue or the dead letter list."""
        results = {"redelivered": 0, "requeued": 0, "dead": 0}
        now = self.clock()
        try:
            records = await self.redis.hgetall(self.deliveries_key)
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

        tracked: set[str] = set()
        for token, record_raw in (records or {}).items():
            try:
                record = json.loads(record_raw)
                raw = record["raw"]
            except (ValueError, KeyError, TypeError):
                await self.redis.hdel(self.deliveries_key, token)
                continue
            tracked.add(raw)

            # Failed deliveries are terminal and must not hold a concurrency slot until they expire.
            expired = now - float(record.get("delivered_at") or 0) >= self.visibility_timeout_seconds
            if not record.get("failed") and not expired:
                continue

            removed = await self.redis.lrem(self.processing_key, 1, raw)
            await self.redis.hdel(self.deliveries_key, token)
            if not removed:
                continue

            outcome = await self._reclaim_entry(raw, record, now=now)
            results[outcome] += 1

        await self._adopt_orphans(tracked, now=now)

        if any(results.values()):
            logger.info("Reclaimed stale deliveries", extra={"context": results})
        return results

    async def _reclaim_entry(self, raw: str, record: dict[str, Any], *, now: float) -> str:
        try:
            entry = json.loads(raw)
            job = dict(entry["job"])
        except (ValueError, KeyError, TypeError):
            await self._bury(raw, reason="unparseable")
            return "dead"

        if record.get("stubTs"):
            job["stubTs"] = record["stubTs"]
        requeues = int(entry.get("requeues") or 0)
        deliveries = int(record.get("deliveries") or 0)

        if record.get("failed"):
            if requeues < self.failed_requeue_limit:
                new_entry = _new_entry(job, requeues=requeues + 1, now=now)
                await self.redis.rpush(self.waiting_key, json.dumps(new_entry))
                logger.info("Failed job requeued", extra={"context": {"requeues": requeues + 1}})
                return "requeued"
            await self._bury(json.dumps({**entry, "job": job}), reason="failed")
            return "dead"

        if deliveries < self.max_deliveries:
            new_entry = _new_entry(job, deliveries=deliveries, requeues=requeues, now=now)
            await self.redis.rpush(self.waiting_key, json.dumps(new_entry))
            logger.warning(
                "Unverified job redelivered",
                extra={"context": {"deliveries": deliveries, "max_deliveries": self.max_deliveries}},
            )
            return "redelivered"

        await self._bury(json.dumps({**entry, "job": job}), reason="max_deliveries")
        return "dead"

    async def _adopt_orphans(self, tracked: set[str], *, now: float) -> None:
        """Give in-flight entries without a delivery record one so they can expire."""
        raws = await self.redis.lrange(self.processing_key, 0, -1)
        for raw in raws or []:
            if raw in tracked:
                continue
            try:
                entry = json.loads(raw)
                token = entry["token"]
            except (ValueError, KeyError, TypeError):
                await self.redis.lrem(self.processing_key, 1, raw)
                await self._bury(raw, reason="unparseable")
                continue
            if await self.redis.hget(self.deliveries_key, token):
                continue
            record = {
                "raw": raw,
                "delivered_at": now,
                "deliveries": int(entry.get("deliveries") or 0) + 1,
                "failed": False,
                "stubTs": (entry.get("job") or {}).get("stubTs"),
            }
            await self.redis.hset(self.deliveries_key, token, json.dumps(record))

    async def _bury(self, raw: str, *, reason: str) -> None:
        await self.redis.lrem(self.processing_key, 1, raw)
        await self.redis.rpush(
            self.dead_key,
            json.dumps({"entry": raw, "reason": reason, "dead_at": self.clock()}),
        )
        logger.critical("Job moved to dead letter", extra={"context": {"queue": self.name, "reason": reason}})
        await alert_critical("Job moved to dead letter", {"queue": self.name, "reason": reason})

    async def depth(self) -> int:
        try:
            return int(await self.redis.llen(self.waiting_key))
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

    async def in_flight(self) -> int:
        try:
            return int(await self.redis.llen(self.processing_key))
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

    async def dead_count(self) -> int:
        try:
            return int(await self.redis.llen(self.dead_key))
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc

    async def peek(self) -> Optional[dict[str, Any]]:
        """Head entry without removing it."""
        try:
            items = await self.redis.lrange(self.waiting_key, 0, 0)
        except Exception as exc:
            raise QueueUnavailable(str(exc)) from exc
        if not items:
            return None
        try:
            return json.loads(items[0])
        except ValueError:
            return {"unparseable": items[0][:100]}
