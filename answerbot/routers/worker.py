import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from answerbot.config import settings
from answerbot.dependencies import get_worker_coordinator
from answerbot.logging_config import get_logger
from answerbot.schemas.worker import WorkerResponse, WorkerTriggerRequest
from answerbot.services.errors import AuthenticationError, ValidationError
from answerbot.services.worker_coordinator import WorkerCoordinator, WorkerInvocation

logger = get_logger("worker")

router = APIRouter()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def build_invocation(request: Request) -> WorkerInvocation:
    scheduler_header = request.headers.get(settings.scheduler_header_name)
    source = request.headers.get("x-trigger-source")
    if not source:
        if request.query_params.get("chain") == "true":
            source = "chained"
        elif scheduler_header:
            source = "scheduler"
        else:
            source = "manual"
    return WorkerInvocation(
        source=source,
        bearer_token=_bearer_token(request.headers.get("authorization")),
        query_key=request.query_params.get("key"),
        scheduler_header=scheduler_header,
    )


async def _run(coordinator: WorkerCoordinator, request: Request, body: WorkerTriggerRequest):
    invocation = build_invocation(request)
    try:
        return await coordinator.run(invocation, body)
    except AuthenticationError:
        return JSONResponse(status_code=401, content={"status": "error", "error": "unauthorized"})
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"status": "error", "error": exc.message})


@router.post("/slack/worker", response_model=WorkerResponse)
async def worker_post(request: Request, coordinator: WorkerCoordinator = Depends(get_worker_coordinator)):
    raw_body = await request.body()
    try:
        data = json.loads(raw_body) if raw_body.strip() else {}
        body = WorkerTriggerRequest(**data)
    except (ValueError, TypeError, PydanticValidationError) as exc:
        logger.warning(f"Invalid worker body: {exc}")
        return JSONResponse(status_code=400, content={"status": "error", "error": "invalid body"})
    return await _run(coordinator, request, body)


@router.get("/slack/worker", response_model=WorkerResponse)
async def worker_get(request: Request, coordinator: WorkerCoordinator = Depends(get_worker_coordinator)):
    body_type = "diagnostic" if request.query_params.get("diagnostic") == "1" else None
    return await _run(coordinator, request, WorkerTriggerRequest(type=body_type))
