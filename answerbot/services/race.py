import asyncio
from typing import Awaitable, TypeVar

from answerbot.logging_config import get_logger
from answerbot.services.errors import UpstreamTimeout

logger = get_logger("race")

T = TypeVar("T")


def _consume_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("Abandoned call finished with error", extra={"context": {"error": str(exc)}})


async def race_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    On timeout the call is abandoned: cancellation is requested but not
    awaited, and a remote request may still run to completion. Its result is
    discarded.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_consume_outcome)
    task.cancel()
    raise UpstreamTimeout(timeout_seconds)
