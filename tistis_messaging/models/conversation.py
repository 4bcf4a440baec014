import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    branch_id = Column(UUID(as_uuid=True))
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)
    channel = Column(Text, nullable=False)  # whatsapp, instagram, facebook, tiktok
    channel_connection_id = Column(UUID(as_uuid=True), ForeignKey("channel_connections.id"))
    status = Column(Text, nullable=False, default="active")  # active, pending, escalated, resolved, closed, archived
    ai_handling = Column(Boolean, nullable=False, default=True)
    escalation_reason = Column(Text)
    escalated_at = Column(TIMESTAMP(timezone=True))
    message_count = Column(Integer, nullable=False, default=0)
    started_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_message_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    lead = relationship("Lead", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
