import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class Job(Base):
    __tablename__ = "job_queue"
    __table_args__ = (Index("ix_job_queue_claim", "status", "priority", "scheduled_for"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"))
    job_type = Column(Text, nullable=False)  # ai_response, send_whatsapp, send_instagram, send_facebook, send_tiktok
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, failed, cancelled
    priority = Column(Integer, nullable=False, default=5)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_for = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    started_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    result = Column(JSONB)
    error_message = Column(Text)
    cached_result = Column(JSONB)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
