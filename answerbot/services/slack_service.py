import time
from typing import Optional

import httpx

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.schemas.job import ChatMessageHandle
from answerbot.services.errors import SlackApiError, SlackRateLimitedError, SlackTransientError, UpstreamTimeout
from answerbot.services.race import race_with_timeout
from answerbot.services.retry import RetryPolicy, background_policy, call_with_retry

logger = get_logger("slack_service")

DEFAULT_RETRY_AFTER_SECONDS = 1.0


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(float(value), 0.0)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


class SlackService:
    """Async client for the Slack Web API methods the bot needs."""

    def __init__(
        self,
        bot_token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.base_url = (base_url or settings.slack_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.slack_request_timeout_seconds
        self._transport = transport

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """POST to a Web API method, translating failures into typed errors."""
        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.bot_token}"},
                    json=data or {},
                )
        except httpx.TransportError as exc:
            logger.warning(f"Slack API transport error: method={method}, error={exc}")
            raise SlackTransientError(method, type(exc).__name__) from exc

        if response.status_code == 429:
            raise SlackRateLimitedError(method, _parse_retry_after(response.headers.get("retry-after")))
        if response.status_code >= 500:
            raise SlackTransientError(method, f"http_{response.status_code}", response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SlackApiError(method, "invalid_json", response.status_code) from exc

        if not payload.get("ok"):
            error = payload.get("error") or "unknown_error"
            if error == "ratelimited":
                raise SlackRateLimitedError(
                    method,
                    _parse_retry_after(response.headers.get("retry-after")),
                    response.status_code,
                )
            logger.warning(f"Slack API error: method={method}, error={error}")
            raise SlackApiError(method, error, response.status_code)

        return payload

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
    ) -> ChatMessageHandle:
        """Post a message and return its editable handle."""
        data = {
            "channel": channel,
            "text": text,
            "unfurl_links": False,
            "unfurl_media": False,
        }
        if thread_ts:
            data["thread_ts"] = thread_ts

        payload = await self._make_request("chat.postMessage", data)
        return ChatMessageHandle(channel=payload.get("channel") or channel, ts=payload["ts"])

    async def update_message(self, handle: ChatMessageHandle, text: str) -> dict:
        """Edit an existing message in place."""
        data = {
            "channel": handle.channel,
            "ts": handle.ts,
            "text": text,
        }
        return await self._make_request("chat.update", data)

    async def auth_test(self) -> dict:
        return await self._make_request("auth.test")


class RetryingSlackService:
    """SlackService wrapper that routes every call through the retry policy."""

    def __init__(self, slack: SlackService, policy: Optional[RetryPolicy] = None, sleep_func=None):
        self.slack = slack
        self.policy = policy or background_policy()
        self._sleep_kwargs = {"sleep_func": sleep_func} if sleep_func else {}

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> ChatMessageHandle:
        return await call_with_retry(
            self.slack.post_message,
            channel,
            text,
            thread_ts,
            policy=policy or self.policy,
            **self._sleep_kwargs,
        )

    async def update_message(
        self,
        handle: ChatMessageHandle,
        text: str,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> dict:
        return await call_with_retry(
            self.slack.update_message,
            handle,
            text,
            policy=policy or self.policy,
            **self._sleep_kwargs,
        )


BOT_ID_RETRY_SECONDS = 60.0

_bot_user_id_cache: Optional[str] = None
_bot_user_id_failed_at: Optional[float] = None


async def get_bot_user_id(slack: Optional[SlackService] = None, clock=time.monotonic) -> Optional[str]:
    """Bot's own user id: configured value, else a per-process cached auth.test lookup.

    Runs on the acknowledgment path, so the lookup is bounded by
    ``slack_bot_user_id_lookup_timeout_seconds`` and a failure suppresses
    further lookups for ``BOT_ID_RETRY_SECONDS``.
    """
    global _bot_user_id_cache, _bot_user_id_failed_at

    if settings.slack_bot_user_id:
        return settings.slack_bot_user_id
    if _bot_user_id_cache:
        return _bot_user_id_cache
    if _bot_user_id_failed_at is not None and clock() - _bot_user_id_failed_at < BOT_ID_RETRY_SECONDS:
        return None
    if slack is None:
        if not settings.slack_bot_token:
            return None
        slack = SlackService(settings.slack_bot_token)

    try:
        payload = await race_with_timeout(slack.auth_test(), settings.slack_bot_user_id_lookup_timeout_seconds)
    except (SlackApiError, UpstreamTimeout) as exc:
        logger.error(f"Failed to resolve bot user id: {exc}")
        _bot_user_id_failed_at = clock()
        return None

    _bot_user_id_failed_at = None
    _bot_user_id_cache = payload.get("user_id")
    logger.info(f"Resolved bot user id: {_bot_user_id_cache}")
    return _bot_user_id_cache


def reset_bot_user_id_cache() -> None:
    global _bot_user_id_cache, _bot_user_id_failed_at
    _bot_user_id_cache = None
    _bot_user_id_failed_at = None
