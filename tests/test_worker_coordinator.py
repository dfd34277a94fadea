import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from answerbot.schemas.job import ChatMessageHandle, Job
from answerbot.schemas.worker import WorkerTriggerRequest
from answerbot.services.errors import AuthenticationError, ValidationError
from answerbot.services.job_processor import TIMEOUT_TEXT
from answerbot.services.job_queue import JobQueue
from answerbot.services.result import Result
from answerbot.services.worker_coordinator import WorkerCoordinator, WorkerInvocation
from conftest import FakeRedis

SECRET = "worker-secret"
AUTHORIZED = WorkerInvocation(source="test", bearer_token=SECRET)


class FakeProcessor:
    def __init__(self, result=None, delay=0.0, error=None, handle=None):
        self.result = result or Result.success("answer")
        self.delay = delay
        self.error = error
        self.handle = handle
        self.jobs = []
        self.deliver_notice = AsyncMock()

    async def process(self, job, on_handle=None):
        self.jobs.append(job)
        if self.handle is not None and on_handle is not None:
            await on_handle(self.handle)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


def make_job(n: int) -> Job:
    return Job(channelId="C1", userId=f"U{n}", questionText=f"q{n}", eventTs=f"17000000{n:02d}.0001")


@pytest.fixture
def queue():
    return JobQueue(FakeRedis(), name="test", concurrency_limit=5, visibility_timeout_seconds=120)


@pytest.fixture
def trigger():
    trigger = MagicMock()
    trigger.fire = MagicMock()
    return trigger


def make_coordinator(queue, processor, trigger, **kwargs) -> WorkerCoordinator:
    options = {"secret_key": SECRET, "scheduler_header_value": "true", "coordinator_timeout_seconds": 5}
    options.update(kwargs)
    return WorkerCoordinator(queue, processor, trigger, **options)


async def fill(queue: JobQueue, count: int) -> None:
    for n in range(count):
        await queue.enqueue(make_job(n))


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_rejects_missing_credentials(self, queue, trigger):
        await fill(queue, 1)
        processor = FakeProcessor()
        coordinator = make_coordinator(queue, processor, trigger)

        with pytest.raises(AuthenticationError):
            await coordinator.run(WorkerInvocation(bearer_token="wrong"))

        assert processor.jobs == []
        assert await queue.depth() == 1

    def test_accepts_query_key_and_scheduler_header(self, queue, trigger):
        coordinator = make_coordinator(queue, FakeProcessor(), trigger)

        assert coordinator.authorize(WorkerInvocation(query_key=SECRET)) == "query_key"
        assert coordinator.authorize(WorkerInvocation(scheduler_header="true")) == "scheduler"
        assert coordinator.authorize(WorkerInvocation(trusted=True)) == "trusted"

    def test_unset_secret_rejects_empty_token(self, queue, trigger):
        coordinator = make_coordinator(queue, FakeProcessor(), trigger, secret_key="", scheduler_header_value="")

        with pytest.raises(AuthenticationError):
            coordinator.authorize(WorkerInvocation(bearer_token="", scheduler_header=""))


class TestChaining:
    @pytest.mark.asyncio
    async def test_processes_one_job_and_chains_once(self, queue, trigger):
        await fill(queue, 3)
        processor = FakeProcessor()

        response = await make_coordinator(queue, processor, trigger).run(AUTHORIZED)

        assert response.status == "success"
        assert response.remainingJobs == 2
        assert response.chained is True
        assert [job.userId for job in processor.jobs] == ["U0"]
        trigger.fire.assert_called_once_with("chained")
        assert await queue.in_flight() == 0

    @pytest.mark.asyncio
    async def test_last_job_does_not_chain(self, queue, trigger):
        await fill(queue, 1)

        response = await make_coordinator(queue, FakeProcessor(), trigger).run(AUTHORIZED)

        assert response.status == "success"
        assert response.remainingJobs == 0
        assert response.chained is False
        trigger.fire.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_queue_is_a_safe_no_op(self, queue, trigger):
        processor = FakeProcessor()

        response = await make_coordinator(queue, processor, trigger).run(AUTHORIZED)

        assert response.status == "no_jobs"
        assert processor.jobs == []
        trigger.fire.assert_not_called()


class TestFailurePaths:
    @pytest.mark.asyncio
    async def test_failed_job_stays_unverified(self, queue, trigger):
        await fill(queue, 1)
        processor = FakeProcessor(result=Result.failure("timed out", "timeout"))

        response = await make_coordinator(queue, processor, trigger).run(AUTHORIZED)

        assert response.status == "error"
        assert response.error == "timeout"
        assert await queue.in_flight() == 1
        records = await queue.redis.hgetall(queue.deliveries_key)
        assert json.loads(next(iter(records.values())))["failed"] is True

    @pytest.mark.asyncio
    async def test_processor_crash_returns_structured_error(self, queue, trigger):
        await fill(queue, 1)
        processor = FakeProcessor(error=RuntimeError("boom"))

        response = await make_coordinator(queue, processor, trigger).run(AUTHORIZED)

        assert response.status == "error"
        assert response.error == "internal_error"

    @pytest.mark.asyncio
    async def test_coordinator_timeout_notifies_user(self, queue, trigger):
        await fill(queue, 1)
        handle = ChatMessageHandle(channel="C1", ts="5.5")
        processor = FakeProcessor(delay=10, handle=handle)

        response = await make_coordinator(queue, processor, trigger, coordinator_timeout_seconds=0.05).run(AUTHORIZED)

        assert response.error == "timeout"
        args = processor.deliver_notice.await_args.args
        assert args[1] == handle
        assert args[2] == TIMEOUT_TEXT
        assert await queue.in_flight() == 1

    @pytest.mark.asyncio
    async def test_queue_outage_returns_error(self, queue, trigger):
        queue.redis.fail_with = ConnectionError("down")

        with patch("answerbot.services.worker_coordinator.alert_critical", new=AsyncMock()) as alert:
            response = await make_coordinator(queue, FakeProcessor(), trigger).run(AUTHORIZED)

        assert response.status == "error"
        alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handle_persisted_for_redelivery(self, queue, trigger):
        await fill(queue, 1)
        processor = FakeProcessor(
            result=Result.failure("x", "upstream_error"),
            handle=ChatMessageHandle(channel="C1", ts="8.8"),
        )

        await make_coordinator(queue, processor, trigger).run(AUTHORIZED)

        records = await queue.redis.hgetall(queue.deliveries_key)
        assert json.loads(next(iter(records.values())))["stubTs"] == "8.8"


class TestBodyTypes:
    @pytest.mark.asyncio
    async def test_diagnostic_reports_without_processing(self, queue, trigger):
        await fill(queue, 2)
        processor = FakeProcessor()

        response = await make_coordinator(queue, processor, trigger).run(
            AUTHORIZED, WorkerTriggerRequest(type="diagnostic")
        )

        assert response.action == "diagnostic"
        assert response.remainingJobs == 2
        assert response.inFlight == 0
        assert processor.jobs == []

    @pytest.mark.asyncio
    async def test_direct_job_bypasses_queue(self, queue, trigger):
        await fill(queue, 2)
        processor = FakeProcessor()
        job = make_job(9)

        response = await make_coordinator(queue, processor, trigger).run(
            AUTHORIZED, WorkerTriggerRequest(type="direct_job", job=job)
        )

        assert response.status == "success"
        assert response.jobId == job.job_id
        assert processor.jobs == [job]
        assert await queue.depth() == 2
        trigger.fire.assert_not_called()

    @pytest.mark.asyncio
    async def test_direct_job_requires_job(self, queue, trigger):
        with pytest.raises(ValidationError):
            await make_coordinator(queue, FakeProcessor(), trigger).run(
                AUTHORIZED, WorkerTriggerRequest(type="direct_job")
            )
