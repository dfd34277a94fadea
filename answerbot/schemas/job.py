from typing import Optional

from pydantic import BaseModel


class ChatMessageHandle(BaseModel):
    """Editable chat message: channel plus message timestamp."""

    channel: str
    ts: str


class Job(BaseModel):
    channelId: str
    userId: str
    questionText: str
    eventTs: str
    threadTs: Optional[str] = None
    channelType: Optional[str] = None
    stubTs: Optional[str] = None
    useStreaming: bool = True
    source: str = "message"

    @property
    def job_id(self) -> str:
        return f"{self.userId}-{self.eventTs[:10]}"

    @property
    def stub_handle(self) -> Optional[ChatMessageHandle]:
        if not self.stubTs:
            return None
        return ChatMessageHandle(channel=self.channelId, ts=self.stubTs)

    @property
    def reply_thread_ts(self) -> Optional[str]:
        """Thread to answer in: channels thread under the question, DMs only when already threaded."""
        if self.source != "message" or self.channelType in ("im", "mpim"):
            return self.threadTs
        return self.threadTs or self.eventTs


class QueueMessage(BaseModel):
    token: str
    job: Job
    deliveries: int = 1
    requeues: int = 0
