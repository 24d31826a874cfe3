from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime


class JobRunStatus(str, Enum):
    running = "running"
    success = "success"
    partial = "partial"
    failed = "failed"


class JobRunLog(BaseModel):
    id: UUID
    job_name: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: JobRunStatus = JobRunStatus.running
    records_processed: int = 0
    errors: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
