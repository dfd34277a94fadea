"""Turns one Job into exactly one user-visible outcome in Slack."""

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Optional

from answerbot.config import settings
from answerbot.logging_config import LoggerAdapter, get_logger
from answerbot.schemas.job import ChatMessageHandle, Job
from answerbot.services.answer.base import AnswerEngine
from answerbot.services.errors import DeliveryFailure, SlackApiError, UpstreamFailure, UpstreamTimeout
from answerbot.services.race import race_with_timeout
from answerbot.services.result import DELIVERY_ERROR, TIMEOUT, UPSTREAM_ERROR, Result
from answerbot.services.retry import RetryPolicy
from answerbot.services.slack_service import RetryingSlackService
from answerbot.services.streaming_updater import StreamingUpdater

logger = get_logger("job_processor")

PLACEHOLDER_TEXT = ":mag: Searching the docs for an answer..."
INTERIM_TEXT = ":hourglass_flowing_sand: Still working on it, this one is taking a little longer than usual..."
TIMEOUT_TEXT = (
    "Sorry, I couldn't finish an answer in time. "
    "Please try again, ideally with a more specific question."
)
FAILURE_TEXT = "Sorry, something went wrong while generating an answer. Please try again in a moment."
TIMEOUT_INCOMPLETE_NOTICE = "\n\n_(Note: I ran out of time, so this response may be incomplete.)_"

HandleCallback = Callable[[ChatMessageHandle], Awaitable[None]]


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class JobProcessor:
    def __init__(
        self,
        slack: RetryingSlackService,
        engine: AnswerEngine,
        *,
        job_timeout_seconds: Optional[float] = None,
        interim_delay_seconds: Optional[float] = None,
        streaming_enabled: Optional[bool] = None,
        clock=time.monotonic,
        sleep_func=asyncio.sleep,
    ):
        self.slack = slack
        self.engine = engine
        self.job_timeout_seconds = (
            job_timeout_seconds if job_timeout_seconds is not None else settings.job_timeout_seconds
        )
        self.interim_delay_seconds = (
            interim_delay_seconds if interim_delay_seconds is not None else settings.interim_notice_delay_seconds
        )
        self.streaming_enabled = streaming_enabled if streaming_enabled is not None else settings.streaming_enabled
        self.clock = clock
        self.sleep_func = sleep_func

    async def process(self, job: Job, on_handle: Optional[HandleCallback] = None) -> Result[str]:
        """Process one job.

        Every path leaves the user with an answer, a timeout notice or a
        failure notice. Errors come back as a failed Result with code
        ``timeout``, ``upstream_error`` or ``delivery_error``.
        """
        log = LoggerAdapter(logger, {"job_id": job.job_id, "channel": job.channelId})
        deadline = self.clock() + self.job_timeout_seconds

        handle = await self._ensure_placeholder(job, on_handle, log)
        interim = self._arm_interim(handle, log) if handle else None
        try:
            if handle is not None and job.useStreaming and self.streaming_enabled:
                return await self._process_streaming(job, handle, deadline, interim, log)
            return await self._process_blocking(job, handle, interim, log)
        finally:
            await _cancel(interim)

    async def _ensure_placeholder(
        self,
        job: Job,
        on_handle: Optional[HandleCallback],
        log: LoggerAdapter,
    ) -> Optional[ChatMessageHandle]:
        handle = job.stub_handle
        if handle is not None:
            log.info("Reusing existing placeholder", context={"ts": handle.ts})
            return handle

        try:
            handle = await self.slack.post_message(job.channelId, PLACEHOLDER_TEXT, job.reply_thread_ts)
        except SlackApiError as exc:
            log.warning("Placeholder post failed, answer will be posted fresh", context={"error": exc.error})
            return None

        if on_handle is not None:
            await on_handle(handle)
        return handle

    def _arm_interim(self, handle: ChatMessageHandle, log: LoggerAdapter) -> asyncio.Task:
        async def _notify() -> None:
            await self.sleep_func(self.interim_delay_seconds)
            try:
                await self.slack.update_message(handle, INTERIM_TEXT, policy=RetryPolicy(max_retries=0))
                log.info("Interim notice sent")
            except SlackApiError as exc:
                log.warning("Interim notice failed", context={"error": exc.error})

        return asyncio.create_task(_notify())

    async def _process_blocking(
        self,
        job: Job,
        handle: Optional[ChatMessageHandle],
        interim: Optional[asyncio.Task],
        log: LoggerAdapter,
    ) -> Result[str]:
        try:
            answer = await race_with_timeout(self.engine.generate_answer(job.questionText), self.job_timeout_seconds)
            if not answer or not answer.strip():
                raise UpstreamFailure("empty answer")
        except UpstreamTimeout as exc:
            await _cancel(interim)
            log.warning("Answer generation timed out", context={"timeout_seconds": exc.timeout_seconds})
            await self.deliver_notice(job, handle, TIMEOUT_TEXT, log)
            return Result.failure(exc.message, TIMEOUT)
        except Exception as exc:
            await _cancel(interim)
            log.error("Answer generation failed", context={"error": str(exc)}, exc_info=True)
            await self.deliver_notice(job, handle, FAILURE_TEXT, log)
            return Result.failure(str(exc), UPSTREAM_ERROR)

        await _cancel(interim)
        try:
            await self._deliver(job, handle, answer)
        except SlackApiError as exc:
            log.error("Final answer delivery failed", context={"error": exc.error})
            return Result.failure(exc.message, DELIVERY_ERROR)

        log.info("Answer delivered", context={"answer_length": len(answer)})
        return Result.success(answer)

    async def _process_streaming(
        self,
        job: Job,
        handle: ChatMessageHandle,
        deadline: float,
        interim: Optional[asyncio.Task],
        log: LoggerAdapter,
    ) -> Result[str]:
        updater = StreamingUpdater(self.slack, handle, deadline=deadline, clock=self.clock)

        async def on_chunk(content: str) -> None:
            # Real content supersedes the interim notice.
            if interim is not None and not interim.done():
                interim.cancel()
            await updater.on_chunk(content)

        try:
            answer = await race_with_timeout(
                self.engine.stream_answer(job.questionText, on_chunk),
                self.job_timeout_seconds,
            )
            if not (answer or updater.latest).strip():
                raise UpstreamFailure("empty answer")
        except UpstreamTimeout as exc:
            await _cancel(interim)
            log.warning(
                "Streaming answer timed out",
                context={"timeout_seconds": exc.timeout_seconds, "edits": updater.emitted_count},
            )
            await self._fail_stream(job, updater, TIMEOUT_TEXT, TIMEOUT_INCOMPLETE_NOTICE, log)
            return Result.failure(exc.message, TIMEOUT)
        except Exception as exc:
            await _cancel(interim)
            log.error("Streaming answer failed", context={"error": str(exc)}, exc_info=True)
            await self._fail_stream(job, updater, FAILURE_TEXT, None, log)
            return Result.failure(str(exc), UPSTREAM_ERROR)

        await _cancel(interim)
        try:
            final = await updater.finish(answer)
        except DeliveryFailure as exc:
            log.error("Final streaming edit failed", context={"error": exc.message})
            return Result.failure(exc.message, DELIVERY_ERROR)

        log.info("Streamed answer delivered", context={"answer_length": len(final), "edits": updater.emitted_count})
        return Result.success(final)

    async def _fail_stream(
        self,
        job: Job,
        updater: StreamingUpdater,
        notice_text: str,
        incomplete_notice: Optional[str],
        log: LoggerAdapter,
    ) -> None:
        try:
            if incomplete_notice is None:
                kept = await updater.fail()
            else:
                kept = await updater.fail(incomplete_notice)
        except DeliveryFailure as exc:
            log.error("Could not mark partial answer incomplete", context={"error": exc.message})
            return
        if not kept:
            await self.deliver_notice(job, updater.handle, notice_text, log)

    async def _deliver(self, job: Job, handle: Optional[ChatMessageHandle], text: str) -> None:
        if handle is not None:
            await self.slack.update_message(handle, text)
        else:
            await self.slack.post_message(job.channelId, text, job.reply_thread_ts)

    async def deliver_notice(
        self,
        job: Job,
        handle: Optional[ChatMessageHandle],
        text: str,
        log: LoggerAdapter,
    ) -> None:
        try:
            await self._deliver(job, handle, text)
        except SlackApiError as exc:
            log.error("Failure notice delivery failed", context={"error": exc.error})
