from typing import Literal, Optional

from pydantic import BaseModel

from answerbot.schemas.job import Job


class WorkerTriggerRequest(BaseModel):
    type: Optional[Literal["direct_job", "chained", "diagnostic", "scheduled"]] = None
    job: Optional[Job] = None


class WorkerResponse(BaseModel):
    status: Literal["success", "error", "no_jobs"]
    remainingJobs: int = 0
    processingTime: int = 0
    action: Optional[str] = None
    jobId: Optional[str] = None
    inFlight: Optional[int] = None
    chained: bool = False
    error: Optional[str] = None


class QueueDiagnosticResponse(BaseModel):
    waiting: int
    inFlight: int
    dead: int
    concurrencyLimit: int
    sampleJob: Optional[dict] = None
