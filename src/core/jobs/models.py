from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

JobState = Literal["waiting", "active", "delayed", "completed", "failed"]


class JobQueueOptions(BaseModel):
    attempts: int = Field(default=5, ge=1, description="Maximum attempts per job.")
    backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Base delay for exponential backoff between attempts.",
    )
    remove_on_complete: int = Field(
        default=100, ge=0, description="Completed jobs retained for inspection."
    )
    remove_on_fail: int = Field(default=200, ge=0, description="Failed jobs retained.")

    def retry_delay_seconds(self, attempts_made: int) -> float:
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


class QueuedJob(BaseModel):
    job_id: str
    queue_name: str
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    state: JobState = "waiting"
    attempts_made: int = 0
    max_attempts: int = 5
    failed_reason: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class QueueDepth(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
