"""Inbound Slack payloads: handshake, normalization and admission into Jobs."""

import hashlib
import re
import time
from typing import Any, Optional

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.schemas.job import Job
from answerbot.schemas.slack import AdmitResult, InboundEvent
from answerbot.services.dedup_service import DedupStore, build_dedup_key
from answerbot.services.errors import DuplicateEvent, ValidationError
from answerbot.services.rate_limit_service import check_user_rate_limit

logger = get_logger("event_gateway")

DM_CHANNEL_TYPES = ("im", "mpim")
TRIGGER_TYPES = ("direct_trigger", "diagnostic")
LEADING_MENTION_RE = re.compile(r"^\s*<@[A-Z0-9]+(?:\|[^>]*)?>")


def _content_event_id(kind: str, channel_id: str, user_id: str, text: str) -> str:
    """Stable identity for payloads that carry no id or timestamp of their own."""
    digest = hashlib.sha256(f"{kind}\n{channel_id}\n{user_id}\n{text}".encode("utf-8")).hexdigest()
    return f"{kind}:{digest[:32]}"


def handle_challenge(payload: dict) -> Optional[str]:
    """Challenge token for a url_verification handshake, else None."""
    if payload.get("type") != "url_verification":
        return None
    challenge = payload.get("challenge")
    if not isinstance(challenge, str) or not challenge:
        raise ValidationError("url_verification without challenge")
    return challenge


def strip_self_mention(text: str, bot_user_id: Optional[str]) -> str:
    if bot_user_id:
        text = re.sub(rf"<@{re.escape(bot_user_id)}(?:\|[^>]*)?>", "", text)
    else:
        text = LEADING_MENTION_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def _is_self_originated(event: dict, bot_user_id: Optional[str]) -> bool:
    if event.get("bot_id") or event.get("subtype") == "bot_message":
        return True
    return bool(bot_user_id) and event.get("user") == bot_user_id


def _extract_callback(payload: dict, bot_user_id: Optional[str]) -> Optional[InboundEvent]:
    event = payload.get("event")
    if not isinstance(event, dict):
        raise ValidationError("event_callback without event")

    event_type = event.get("type")
    if event_type == "message":
        # Channel messages arrive as app_mention; plain messages only count in DMs.
        if event.get("channel_type") not in DM_CHANNEL_TYPES:
            return None
    elif event_type != "app_mention":
        logger.info("Ignoring unsupported event type", extra={"context": {"event_type": event_type}})
        return None

    if _is_self_originated(event, bot_user_id):
        logger.info("Ignoring bot-originated message", extra={"context": {"channel": event.get("channel")}})
        return None
    # Edits, deletions and joins carry a subtype and are not questions.
    if event.get("subtype"):
        return None

    channel_id = event.get("channel")
    user_id = event.get("user")
    ts = event.get("ts") or event.get("event_ts")
    text = strip_self_mention(event.get("text") or "", bot_user_id)
    if not channel_id or not user_id or not ts or not text:
        logger.info(
            "Dropping event with missing fields",
            extra={"context": {"channel": channel_id, "user": user_id, "has_text": bool(text)}},
        )
        return None

    return InboundEvent(
        type=event_type,
        channelId=channel_id,
        userId=user_id,
        text=text,
        timestamp=ts,
        threadTs=event.get("thread_ts"),
        channelType=event.get("channel_type"),
        eventId=payload.get("event_id"),
    )


def _extract_command(payload: dict, bot_user_id: Optional[str]) -> Optional[InboundEvent]:
    channel_id = payload.get("channel_id")
    user_id = payload.get("user_id")
    text = strip_self_mention(payload.get("text") or "", bot_user_id)
    if not channel_id or not user_id or not text:
        logger.info("Dropping command with missing fields", extra={"context": {"channel": channel_id}})
        return None
    channel_type = "im" if payload.get("channel_name") == "directmessage" else None
    return InboundEvent(
        type="command",
        channelId=channel_id,
        userId=user_id,
        text=text,
        timestamp=f"{time.time():.6f}",
        channelType=channel_type,
        eventId=payload.get("trigger_id") or _content_event_id("command", channel_id, user_id, text),
    )


def _extract_trigger(payload: dict) -> Optional[InboundEvent]:
    kind = payload["type"]
    channel_id = payload.get("channelId") or payload.get("channel")
    user_id = payload.get("userId") or payload.get("user") or "diagnostic"
    text = (payload.get("text") or payload.get("questionText") or "").strip()
    if kind == "direct_trigger" and (not channel_id or not text):
        logger.info("Dropping direct trigger with missing fields", extra={"context": {"channel": channel_id}})
        return None
    event_id = payload.get("eventId")
    if not event_id and not payload.get("ts"):
        event_id = _content_event_id(kind, channel_id or "", user_id, text)
    return InboundEvent(
        type=kind,
        channelId=channel_id or "",
        userId=user_id,
        text=text,
        timestamp=payload.get("ts") or f"{time.time():.6f}",
        threadTs=payload.get("threadTs"),
        eventId=event_id,
    )


def extract_event(payload: Any, bot_user_id: Optional[str] = None) -> Optional[InboundEvent]:
    """Normalize a webhook payload.

    Returns None for events that are valid but should be dropped silently
    (bot-originated, unsupported, or missing required fields). Raises
    ValidationError for payloads that are not a recognizable envelope.
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")

    payload_type = payload.get("type")
    if payload_type == "event_callback":
        return _extract_callback(payload, bot_user_id)
    if payload_type == "command":
        return _extract_command(payload, bot_user_id)
    if payload_type in TRIGGER_TYPES:
        return _extract_trigger(payload)
    raise ValidationError(f"unsupported payload type: {payload_type}")


def job_from_event(event: InboundEvent, use_streaming: Optional[bool] = None) -> Job:
    return Job(
        channelId=event.channelId,
        userId=event.userId,
        questionText=event.text,
        eventTs=event.timestamp,
        threadTs=event.threadTs,
        channelType=event.channelType,
        useStreaming=settings.streaming_enabled if use_streaming is None else use_streaming,
        source="message" if event.type in ("app_mention", "message") else event.type,
    )


class EventGateway:
    """Admission control: dedup, per-user rate limit, then a derived Job."""

    def __init__(self, dedup_store: DedupStore, redis_client=None, *, user_rate_limit: Optional[int] = None):
        self.dedup_store = dedup_store
        self.redis = redis_client
        self.user_rate_limit = user_rate_limit

    async def _claim(self, key: str) -> None:
        if not await self.dedup_store.claim(key):
            raise DuplicateEvent(key)

    async def admit(self, event: InboundEvent) -> AdmitResult:
        """Admit an event at most once per dedup window.

        DedupUnavailable propagates; the caller decides how to acknowledge.
        """
        key = build_dedup_key(event.eventId, event.timestamp, event.channelId)
        if key is None:
            logger.info("Event has no usable identity", extra={"context": {"channel": event.channelId}})
            return AdmitResult(accepted=False, reason="missing_identity")

        try:
            await self._claim(key)
        except DuplicateEvent as exc:
            return AdmitResult(accepted=False, reason="duplicate", dedup_key=exc.dedup_key)

        if self.redis is not None:
            decision = await check_user_rate_limit(self.redis, event.userId, self.user_rate_limit)
            if not decision.allowed:
                return AdmitResult(accepted=False, reason="rate_limited", dedup_key=key)

        job = job_from_event(event)
        logger.info(
            "Event admitted",
            extra={"context": {"dedup_key": key, "job_id": job.job_id, "channel": job.channelId}},
        )
        return AdmitResult(accepted=True, reason="accepted", dedup_key=key, job=job)
