from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TakeoverRequest(BaseModel):
    staff_id: Optional[str] = None


class StaffMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4096)
    staff_id: Optional[str] = None


class ConversationActionResponse(BaseModel):
    success: bool
    conversation_id: UUID
    status: str
    ai_handling: bool
    cancelled_jobs: int = 0


class StaffMessageResponse(BaseModel):
    success: bool
    message_id: UUID
    job_id: UUID
