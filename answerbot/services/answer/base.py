from abc import ABC, abstractmethod
from typing import Awaitable, Callable

ChunkCallback = Callable[[str], Awaitable[None]]


class AnswerEngine(ABC):
    """Abstract base class for answer-generation backends."""

    @abstractmethod
    async def generate_answer(self, question: str) -> str:
        """Return the complete answer for ``question``."""
        pass

    @abstractmethod
    async def stream_answer(self, question: str, on_chunk: ChunkCallback) -> str:
        """Stream an answer, calling ``on_chunk`` with the accumulated text so far.

        Returns the full answer.
        """
        pass
