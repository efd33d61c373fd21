"""Background job schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class JobHandle(BaseModel):
    job_id: str
    type: str
    status: str


class JobState(BaseModel):
    job_id: str
    type: str
    status: str  # waiting, active, completed, failed
    progress: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
