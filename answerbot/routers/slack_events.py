import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from answerbot.dependencies import get_event_gateway, get_job_queue, get_slack_service, get_worker_trigger
from answerbot.logging_config import get_logger
from answerbot.schemas.slack import InboundEvent
from answerbot.services.alert_service import alert_critical
from answerbot.services.errors import DedupUnavailable, QueueUnavailable, SlackApiError, ValidationError
from answerbot.services.event_gateway import EventGateway, extract_event, handle_challenge
from answerbot.services.job_queue import JobQueue
from answerbot.services.rate_limit_service import MSG_RATE_LIMITED
from answerbot.services.retry import ack_policy
from answerbot.services.slack_service import RetryingSlackService, get_bot_user_id
from answerbot.services.slack_signature import verify_signature
from answerbot.services.worker_chain import WorkerTrigger

logger = get_logger("slack_events")

router = APIRouter()

ACK = {"ok": True}


async def _post_rate_limit_notice(slack: RetryingSlackService, event: InboundEvent) -> None:
    try:
        await slack.post_message(event.channelId, MSG_RATE_LIMITED, event.threadTs, policy=ack_policy())
    except SlackApiError as exc:
        logger.warning(f"Rate limit notice failed: channel={event.channelId}, error={exc.error}")


@router.post("/slack/events")
async def handle_slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: EventGateway = Depends(get_event_gateway),
    queue: JobQueue = Depends(get_job_queue),
    slack: RetryingSlackService = Depends(get_slack_service),
    trigger: WorkerTrigger = Depends(get_worker_trigger),
):
    """
    Slack Events API entry point. Acknowledges within the platform window:
    - url_verification -> echo challenge
    - signed events -> dedup, enqueue, kick the worker in the background
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "invalid JSON body"})

    try:
        challenge = handle_challenge(payload) if isinstance(payload, dict) else None
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"error": exc.message})
    if challenge is not None:
        return {"challenge": challenge}

    if not verify_signature(
        raw_body,
        request.headers.get("x-slack-signature"),
        request.headers.get("x-slack-request-timestamp"),
    ):
        logger.warning("Rejected Slack request with invalid signature")
        return JSONResponse(status_code=401, content={"error": "invalid signature"})

    retry_num = request.headers.get("x-slack-retry-num")
    if retry_num:
        logger.info(
            "Slack redelivery received",
            extra={"context": {"retry_num": retry_num, "reason": request.headers.get("x-slack-retry-reason")}},
        )

    bot_user_id = await get_bot_user_id(slack.slack)
    try:
        event = extract_event(payload, bot_user_id)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"error": exc.message})
    if event is None:
        return ACK

    if event.type == "diagnostic":
        try:
            depth = await queue.depth()
        except QueueUnavailable as exc:
            return {"ok": True, "queueDepth": None, "error": exc.message}
        return {"ok": True, "queueDepth": depth}

    try:
        admission = await gateway.admit(event)
    except DedupUnavailable as exc:
        logger.critical(
            "Dropping event: dedup store unavailable",
            extra={"context": {"channel": event.channelId, "error": exc.message}},
        )
        background_tasks.add_task(alert_critical, "Slack event dropped: dedup store unavailable", {"error": exc.message})
        return ACK

    if not admission.accepted:
        if admission.reason == "rate_limited":
            background_tasks.add_task(_post_rate_limit_notice, slack, event)
        return ACK

    job = admission.job
    if not await queue.enqueue(job):
        logger.critical(
            "Dropping event: job queue unavailable",
            extra={"context": {"job_id": job.job_id, "dedup_key": admission.dedup_key}},
        )
        background_tasks.add_task(alert_critical, "Slack event dropped: job queue unavailable", {"job_id": job.job_id})
        return ACK

    background_tasks.add_task(trigger.trigger, "slack_events")
    return ACK
