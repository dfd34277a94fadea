from answerbot.services.answer.base import AnswerEngine, ChunkCallback
from answerbot.services.answer.http_engine import HttpAnswerEngine

__all__ = ["AnswerEngine", "ChunkCallback", "HttpAnswerEngine"]
