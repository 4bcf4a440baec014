from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

MAX_JOBS_PER_REQUEST = 50


class ProcessJobsRequest(BaseModel):
    max_jobs: Optional[int] = 10
    job_type: Optional[str] = None

    @property
    def effective_max_jobs(self) -> int:
        """Zero, negative or missing values fall back to the default batch of 10."""
        if not self.max_jobs or self.max_jobs < 1:
            return 10
        return min(self.max_jobs, MAX_JOBS_PER_REQUEST)


class ProcessJobsResponse(BaseModel):
    success: bool
    processed: int
    succeeded: int
    failed: int
    retried: int = 0
    deferred: int = 0
    errors: list[str] = []
    duration_ms: int


class QueueStatsResponse(BaseModel):
    status: str
    queue_stats: dict[str, Any]
    timestamp: datetime


class DeadLetterRetryResponse(BaseModel):
    success: bool
    claimed: int
    resolved: int
    rescheduled: int
    failed: int


class DeadLetterItem(BaseModel):
    id: UUID
    channel: str
    tenant_slug: str
    error_message: str
    retry_count: int
    max_retries: int
    status: str
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterItem]
    stats: dict[str, Any]


class DismissDeadLetterRequest(BaseModel):
    notes: Optional[str] = None


class DeadLetterActionResponse(BaseModel):
    success: bool
    dead_letter_id: UUID
    status: str
