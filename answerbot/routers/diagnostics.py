"""Queue health endpoint, guarded by the worker secret."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from answerbot.dependencies import get_job_queue, get_worker_coordinator
from answerbot.routers.worker import build_invocation
from answerbot.schemas.worker import QueueDiagnosticResponse
from answerbot.services.errors import AuthenticationError, QueueUnavailable
from answerbot.services.job_queue import JobQueue
from answerbot.services.worker_coordinator import WorkerCoordinator

router = APIRouter()

PREVIEW_CHARS = 100


def _preview(entry: dict | None) -> dict | None:
    if not entry:
        return None
    job = entry.get("job") or {}
    question = job.get("questionText") or ""
    return {
        "token": entry.get("token"),
        "channelId": job.get("channelId"),
        "userId": job.get("userId"),
        "questionText": question[:PREVIEW_CHARS],
        "enqueuedAt": entry.get("enqueued_at"),
        "deliveries": entry.get("deliveries"),
    }


@router.get("/slack/queue-diagnostic", response_model=QueueDiagnosticResponse)
async def queue_diagnostic(
    request: Request,
    queue: JobQueue = Depends(get_job_queue),
    coordinator: WorkerCoordinator = Depends(get_worker_coordinator),
):
    try:
        coordinator.authorize(build_invocation(request))
    except AuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid worker key")

    try:
        return QueueDiagnosticResponse(
            waiting=await queue.depth(),
            inFlight=await queue.in_flight(),
            dead=await queue.dead_count(),
            concurrencyLimit=queue.concurrency_limit,
            sampleJob=_preview(await queue.peek()),
        )
    except QueueUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
