import asyncio
from typing import Optional

import httpx

from answerbot.config import settings
from answerbot.logging_config import get_logger

logger = get_logger("worker_chain")

TRIGGER_TIMEOUT_SECONDS = 5.0

# Strong references keep detached triggers alive until they finish.
_pending_triggers: set[asyncio.Task] = set()


class WorkerTrigger:
    """Fires follow-up invocations of the worker endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout_seconds: float = TRIGGER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.worker_base_url).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.worker_secret_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def trigger(self, source: str, body: Optional[dict] = None) -> bool:
        """POST to the worker endpoint. A read timeout still counts as triggered."""
        params = {"chain": "true"} if source == "chained" else None
        headers = {"X-Trigger-Source": source}
        if self.secret_key:
            headers["Authorization"] = f"Bearer {self.secret_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/slack/worker",
                    params=params,
                    headers=headers,
                    json=body if body is not None else ({"type": "chained"} if source == "chained" else {}),
                )
        except httpx.ReadTimeout:
            # The request was accepted; the follow-up keeps running server-side.
            logger.info("Worker trigger sent, not waiting for completion", extra={"context": {"source": source}})
            return True
        except httpx.HTTPError as exc:
            logger.error(
                "Worker trigger failed",
                extra={"context": {"source": source, "error": f"{type(exc).__name__}: {exc}"}},
            )
            return False

        if response.status_code >= 400:
            logger.error(
                "Worker trigger rejected",
                extra={"context": {"source": source, "status_code": response.status_code}},
            )
            return False
        logger.info("Worker trigger completed", extra={"context": {"source": source}})
        return True

    def fire(self, source: str, body: Optional[dict] = None) -> asyncio.Task:
        """Start a trigger without awaiting it."""
        task = asyncio.create_task(self.trigger(source, body))
        _pending_triggers.add(task)
        task.add_done_callback(_pending_triggers.discard)
        return task