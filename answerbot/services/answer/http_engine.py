from typing import Optional

import httpx

from answerbot.config import settings
from answerbot.logging_config import get_logger
from answerbot.services.answer.base import AnswerEngine, ChunkCallback
from answerbot.services.errors import UpstreamFailure

logger = get_logger("answer.http")


class HttpAnswerEngine(AnswerEngine):
    """Client for the remote retrieval-and-completion service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.answer_engine_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.answer_engine_api_key
        # The job timeout race bounds the call; this only catches dead connections.
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.job_timeout_seconds + 5
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate_answer(self, question: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/ask-question",
                    headers=self._headers(),
                    json={"question": question},
                )
            except httpx.HTTPError as exc:
                raise UpstreamFailure(f"answer service unreachable: {type(exc).__name__}") from exc

        if not response.is_success:
            logger.error(f"Answer service error: {response.status_code} - {response.text[:200]}")
            raise UpstreamFailure(f"answer service returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFailure("answer service returned invalid JSON") from exc

        answer = data.get("answer") or ""
        logger.debug(f"Answer received: {len(answer)} chars")
        return answer

    async def stream_answer(self, question: str, on_chunk: ChunkCallback) -> str:
        accumulated = ""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/ask-question-stream",
                    headers=self._headers(),
                    json={"question": question},
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        logger.error(f"Answer stream error: {response.status_code} - {response.text[:200]}")
                        raise UpstreamFailure(f"answer stream returned {response.status_code}")

                    async for delta in response.aiter_text():
                        if not delta:
                            continue
                        accumulated += delta
                        await on_chunk(accumulated)
            except httpx.HTTPError as exc:
                raise UpstreamFailure(f"answer stream interrupted: {type(exc).__name__}") from exc

        return accumulated
