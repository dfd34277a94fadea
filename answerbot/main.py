import asyncio
import os

from fastapi import FastAPI

from answerbot.config import settings
from answerbot.dependencies import build_worker_coordinator
from answerbot.logging_config import get_logger, setup_logging
from answerbot.redis_client import close_redis, get_redis
from answerbot.routers import diagnostics, slack_events, worker
from answerbot.services.worker_coordinator import WorkerInvocation

setup_logging(settings.log_level)

app = FastAPI(
    title="Answerbot API",
    description="Slack question-answering pipeline: event intake, job queue and worker",
    version="0.1.0",
)

app.include_router(slack_events.router)
app.include_router(worker.router)
app.include_router(diagnostics.router)

logger = get_logger("main")
tick_logger = get_logger("worker_tick")
_worker_tick_task: asyncio.Task | None = None


def _is_worker_tick_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.worker_tick_enabled


async def _worker_tick_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.worker_tick_interval_seconds, 1.0))
            coordinator = build_worker_coordinator()
            response = await coordinator.run(WorkerInvocation(source="scheduled", trusted=True))
            if response.status != "no_jobs":
                tick_logger.info("Worker tick processed", extra={"context": response.model_dump()})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            tick_logger.error(
                "Worker tick failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_worker_tick() -> None:
    global _worker_tick_task
    if not _is_worker_tick_enabled():
        return
    if _worker_tick_task is None or _worker_tick_task.done():
        _worker_tick_task = asyncio.create_task(_worker_tick_loop())
        tick_logger.info("Worker tick started")


@app.on_event("shutdown")
async def stop_worker_tick() -> None:
    global _worker_tick_task
    if _worker_tick_task is not None:
        _worker_tick_task.cancel()
        try:
            await _worker_tick_task
        except asyncio.CancelledError:
            pass
        _worker_tick_task = None
    await close_redis()


@app.get("/health")
async def health():
    try:
        redis_ok = bool(await get_redis().ping())
    except Exception as exc:
        logger.warning("Health check: Redis unreachable", extra={"context": {"error": str(exc)}})
        redis_ok = False
    return {"status": "ok" if redis_ok else "degraded", "redis": redis_ok}
