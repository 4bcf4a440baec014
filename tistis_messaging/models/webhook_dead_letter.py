import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class WebhookDeadLetter(Base):
    __tablename__ = "webhook_dead_letters"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel = Column(Text, nullable=False)
    tenant_slug = Column(Text, nullable=False)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"))
    payload = Column(JSONB, nullable=False)
    headers = Column(JSONB, nullable=False, default=dict)
    error_message = Column(Text, nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(TIMESTAMP(timezone=True))
    status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, failed, dismissed
    resolved_at = Column(TIMESTAMP(timezone=True))
    resolution_notes = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
