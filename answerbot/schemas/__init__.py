from answerbot.schemas.job import ChatMessageHandle, Job, QueueMessage

__all__ = ["ChatMessageHandle", "Job", "QueueMessage"]
