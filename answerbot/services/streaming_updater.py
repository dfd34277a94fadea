import time
from dataclasses import replace
from typing import Optional

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.schemas.job import ChatMessageHandle
from answerbot.services.errors import DeliveryFailure, SlackApiError
from answerbot.services.retry import RetryPolicy, background_policy
from answerbot.services.slack_service import RetryingSlackService

logger = get_logger("streaming_updater")

INCOMPLETE_NOTICE = "\n\n_(Note: This response may be incomplete due to an error while generating it.)_"


class StreamingUpdater:
    """Turns a growing partial answer into a bounded number of message edits.

    An intermediate edit goes out only when the content grew by at least
    ``max(min_delta_chars, min_delta_ratio * len(last_emitted))`` characters
    and ``min_interval_seconds`` passed since the last successful edit (or
    since the updater was created). ``finish`` and ``fail`` always flush.
    """

    def __init__(
        self,
        slack: RetryingSlackService,
        handle: ChatMessageHandle,
        *,
        min_interval_seconds: Optional[float] = None,
        min_delta_chars: Optional[int] = None,
        min_delta_ratio: Optional[float] = None,
        deadline: Optional[float] = None,
        clock=time.monotonic,
    ):
        self.slack = slack
        self.handle = handle
        self.min_interval_seconds = (
            min_interval_seconds if min_interval_seconds is not None else settings.stream_min_interval_seconds
        )
        self.min_delta_chars = min_delta_chars if min_delta_chars is not None else settings.stream_min_delta_chars
        self.min_delta_ratio = min_delta_ratio if min_delta_ratio is not None else settings.stream_min_delta_ratio
        self.deadline = deadline
        self.clock = clock

        self.latest = ""
        self.last_emitted = ""
        self.last_edit_at = clock()
        self.emitted_count = 0
        self.closed = False

    def _min_delta(self) -> int:
        return max(self.min_delta_chars, int(self.min_delta_ratio * len(self.last_emitted)))

    def should_emit(self, content: str, now: float) -> bool:
        if content == self.last_emitted:
            return False
        if abs(len(content) - len(self.last_emitted)) < self._min_delta():
            return False
        return now - self.last_edit_at >= self.min_interval_seconds

    def _edit_policy(self) -> RetryPolicy:
        # One retry after a rate limit. The job budget is the only cap on the advised wait.
        if self.deadline is None:
            return replace(background_policy(), max_retries=1)
        return RetryPolicy(
            max_retries=1,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=float("inf"),
            deadline=self.deadline,
        )

    async def _emit(self, content: str) -> None:
        await self.slack.update_message(self.handle, content, policy=self._edit_policy())
        self.last_emitted = content
        self.last_edit_at = self.clock()
        self.emitted_count += 1

    async def on_chunk(self, content: str) -> None:
        """Accept the accumulated answer so far."""
        if self.closed or not content:
            return
        self.latest = content
        if not self.should_emit(content, self.clock()):
            return
        try:
            await self._emit(content)
        except SlackApiError as exc:
            logger.warning(
                "Streaming edit failed, continuing",
                extra={"context": {"channel": self.handle.channel, "ts": self.handle.ts, "error": exc.error}},
            )

    async def _flush(self, content: str) -> None:
        self.closed = True
        if content == self.last_emitted:
            return
        try:
            await self._emit(content)
        except SlackApiError as exc:
            raise DeliveryFailure(f"final edit failed: {exc.error}") from exc

    async def finish(self, final_text: Optional[str] = None) -> str:
        """Flush the final answer regardless of the interval."""
        content = final_text or self.latest
        await self._flush(content)
        return content

    async def fail(self, notice: str = INCOMPLETE_NOTICE) -> bool:
        """Keep partial content and mark it incomplete. False when nothing arrived."""
        if not self.latest:
            self.closed = True
            return False
        await self._flush(self.latest + notice)
        return True
