from typing import Optional

from pydantic import BaseModel

from answerbot.schemas.job import Job


class InboundEvent(BaseModel):
    """Normalized inbound chat event, consumed immediately into a Job or dropped."""

    type: str
    channelId: str
    userId: str
    text: str
    timestamp: str
    threadTs: Optional[str] = None
    channelType: Optional[str] = None
    eventId: Optional[str] = None


class AdmitResult(BaseModel):
    accepted: bool
    reason: str
    dedup_key: Optional[str] = None
    job: Optional[Job] = None
