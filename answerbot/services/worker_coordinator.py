"""One queue job per invocation, then a detached follow-up while work remains."""

import hmac
import time
from dataclasses import dataclass
from typing import Optional

from answerbot.config import settings
from answerbot.logging_config import LoggerAdapter, get_logger
from answerbot.schemas.job import ChatMessageHandle, Job, QueueMessage
from answerbot.schemas.worker import WorkerResponse, WorkerTriggerRequest
from answerbot.services.alert_service import alert_critical
from answerbot.services.errors import AuthenticationError, QueueUnavailable, UpstreamTimeout, ValidationError
from answerbot.services.job_processor import TIMEOUT_TEXT, JobProcessor
from answerbot.services.job_queue import JobQueue
from answerbot.services.race import race_with_timeout
from answerbot.services.result import INTERNAL_ERROR, TIMEOUT, Result
from answerbot.services.state_machine import WorkerState, transition
from answerbot.services.worker_chain import WorkerTrigger

logger = get_logger("worker_coordinator")


@dataclass
class WorkerInvocation:
    """Credentials and origin of one worker call."""

    source: str = "manual"
    bearer_token: Optional[str] = None
    query_key: Optional[str] = None
    scheduler_header: Optional[str] = None
    trusted: bool = False


def _secret_matches(candidate: Optional[str], secret: Optional[str]) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


class _Run:
    def __init__(self, log: LoggerAdapter):
        self.state = WorkerState.IDLE
        self.log = log

    def to(self, new_state: WorkerState) -> None:
        self.state = transition(self.state, new_state)
        self.log.info("Worker state transition", context={"state": new_state.value})


class WorkerCoordinator:
    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        trigger: WorkerTrigger,
        *,
        secret_key: Optional[str] = None,
        scheduler_header_value: Optional[str] = None,
        coordinator_timeout_seconds: Optional[float] = None,
        clock=time.monotonic,
    ):
        self.queue = queue
        self.processor = processor
        self.trigger = trigger
        self.secret_key = secret_key if secret_key is not None else settings.worker_secret_key
        self.scheduler_header_value = (
            scheduler_header_value if scheduler_header_value is not None else settings.scheduler_header_value
        )
        self.coordinator_timeout_seconds = (
            coordinator_timeout_seconds
            if coordinator_timeout_seconds is not None
            else settings.coordinator_timeout_seconds
        )
        self.clock = clock

    def authorize(self, invocation: WorkerInvocation) -> str:
        """Return how the call was authorized, or raise AuthenticationError."""
        if invocation.trusted:
            return "trusted"
        if _secret_matches(invocation.bearer_token, self.secret_key):
            return "bearer"
        if _secret_matches(invocation.query_key, self.secret_key):
            return "query_key"
        if _secret_matches(invocation.scheduler_header, self.scheduler_header_value):
            return "scheduler"
        raise AuthenticationError("worker call not authorized")

    async def run(self, invocation: WorkerInvocation, request: Optional[WorkerTriggerRequest] = None) -> WorkerResponse:
        """Execute one coordinator pass.

        Raises AuthenticationError and ValidationError before any side effect.
        Every later failure is reported in the returned WorkerResponse.
        """
        request = request or WorkerTriggerRequest()
        started = self.clock()
        log = LoggerAdapter(logger, {"source": invocation.source, "body_type": request.type})
        run = _Run(log)

        run.to(WorkerState.AUTHORIZING)
        try:
            method = self.authorize(invocation)
        except AuthenticationError:
            log.warning("Worker call rejected")
            raise
        log.info("Worker call authorized", context={"method": method})

        if request.type == "diagnostic":
            run.to(WorkerState.DONE)
            return await self._diagnostic(started)

        if request.type == "direct_job":
            if request.job is None:
                raise ValidationError("direct_job requires a job")
            run.to(WorkerState.PROCESSING)
            result = await self._process(request.job, None, log)
            run.to(WorkerState.VERIFYING if result.ok else WorkerState.FAILED)
            run.to(WorkerState.CHAIN_CHECK)
            run.to(WorkerState.DONE)
            return self._response(result, request.job, started, action="direct_job", remaining=0)

        run.to(WorkerState.FETCHING)
        try:
            await self.queue.reclaim_stale()
            message = await self.queue.dequeue()
        except QueueUnavailable as exc:
            log.critical("Queue unavailable during fetch", context={"error": exc.message})
            await alert_critical("Worker could not reach the job queue", {"error": exc.message})
            run.to(WorkerState.DONE)
            return WorkerResponse(
                status="error",
                action="fetch",
                error=exc.message,
                processingTime=self._elapsed_ms(started),
            )

        if message is None:
            run.to(WorkerState.DONE)
            remaining = await self._safe_depth(log)
            return WorkerResponse(
                status="no_jobs",
                action="at_capacity" if remaining else "idle",
                remainingJobs=remaining,
                processingTime=self._elapsed_ms(started),
            )

        log = LoggerAdapter(logger, {**log.extra, "job_id": message.job.job_id, "token": message.token})
        run.log = log

        run.to(WorkerState.PROCESSING)
        result = await self._process(message.job, message, log)

        if result.ok:
            run.to(WorkerState.VERIFYING)
            await self._verify(message, log)
        else:
            run.to(WorkerState.FAILED)
            log.warning("Job failed, leaving it unverified", context={"error_code": result.error_code})
            await self.queue.mark_failed(message.token)

        run.to(WorkerState.CHAIN_CHECK)
        remaining = await self._safe_depth(log)
        chained = False
        if remaining > 0:
            self.trigger.fire("chained")
            chained = True
            run.to(WorkerState.CHAINED)
        else:
            run.to(WorkerState.DONE)

        response = self._response(result, message.job, started, action="processed", remaining=remaining)
        response.chained = chained
        return response

    async def _process(self, job: Job, message: Optional[QueueMessage], log: LoggerAdapter) -> Result[str]:
        handles: list[ChatMessageHandle] = []

        async def on_handle(handle: ChatMessageHandle) -> None:
            handles.append(handle)
            if message is not None:
                await self.queue.attach_handle(message.token, handle)

        try:
            return await race_with_timeout(
                self.processor.process(job, on_handle=on_handle),
                self.coordinator_timeout_seconds,
            )
        except UpstreamTimeout as exc:
            log.error("Coordinator timeout reached", context={"timeout_seconds": exc.timeout_seconds})
            handle = handles[0] if handles else job.stub_handle
            await self.processor.deliver_notice(job, handle, TIMEOUT_TEXT, log)
            return Result.failure(exc.message, TIMEOUT)
        except Exception as exc:
            log.error("Job processing crashed", context={"error": str(exc)}, exc_info=True)
            return Result.failure(str(exc), INTERNAL_ERROR)

    async def _verify(self, message: QueueMessage, log: LoggerAdapter) -> None:
        # The user already has the answer: a failed verify is only logged.
        try:
            verified = await self.queue.verify(message.token)
        except QueueUnavailable as exc:
            log.error("Verify failed, job may be redelivered", context={"error": exc.message})
            return
        if not verified:
            log.warning("Verify found no in-flight entry")

    async def _safe_depth(self, log: LoggerAdapter) -> int:
        try:
            return await self.queue.depth()
        except QueueUnavailable as exc:
            log.error("Could not read queue depth", context={"error": exc.message})
            return 0

    async def _diagnostic(self, started: float) -> WorkerResponse:
        try:
            depth = await self.queue.depth()
            in_flight = await self.queue.in_flight()
        except QueueUnavailable as exc:
            return WorkerResponse(status="error", action="diagnostic", error=exc.message)
        return WorkerResponse(
            status="success",
            action="diagnostic",
            remainingJobs=depth,
            inFlight=in_flight,
            processingTime=self._elapsed_ms(started),
        )

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)

    def _response(self, result: Result, job: Job, started: float, *, action: str, remaining: int) -> WorkerResponse:
        return WorkerResponse(
            status="success" if result.ok else "error",
            action=action,
            jobId=job.job_id,
            remainingJobs=remaining,
            processingTime=self._elapsed_ms(started),
            error=None if result.ok else result.error_code,
        )
