"""FastAPI dependency providers. Tests swap these via ``app.dependency_overrides``."""

from fastapi import Depends

from answerbot.config import settings
from answerbot.redis_client import get_redis
from answerbot.services.answer import AnswerEngine, HttpAnswerEngine
from answerbot.services.dedup_service import DedupStore
from answerbot.services.event_gateway import EventGateway
from answerbot.services.job_processor import JobProcessor
from answerbot.services.job_queue import JobQueue
from answerbot.services.slack_service import RetryingSlackService, SlackService
from answerbot.services.worker_chain import WorkerTrigger
from answerbot.services.worker_coordinator import WorkerCoordinator


def get_redis_client():
    return get_redis()


def get_job_queue(redis_client=Depends(get_redis_client)) -> JobQueue:
    return JobQueue(redis_client)


def get_event_gateway(redis_client=Depends(get_redis_client)) -> EventGateway:
    return EventGateway(DedupStore(redis_client), redis_client)


def get_slack_service() -> RetryingSlackService:
    return RetryingSlackService(SlackService(settings.slack_bot_token or ""))


def get_answer_engine() -> AnswerEngine:
    return HttpAnswerEngine()


def get_worker_trigger() -> WorkerTrigger:
    return WorkerTrigger()


def get_worker_coordinator(
    queue: JobQueue = Depends(get_job_queue),
    slack: RetryingSlackService = Depends(get_slack_service),
    engine: AnswerEngine = Depends(get_answer_engine),
    trigger: WorkerTrigger = Depends(get_worker_trigger),
) -> WorkerCoordinator:
    return WorkerCoordinator(queue, JobProcessor(slack, engine), trigger)


def build_worker_coordinator() -> WorkerCoordinator:
    """Coordinator wired outside a request, for the in-process tick."""
    return get_worker_coordinator(
        queue=get_job_queue(get_redis_client()),
        slack=get_slack_service(),
        engine=get_answer_engine(),
        trigger=get_worker_trigger(),
    )
