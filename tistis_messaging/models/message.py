import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("channel", "external_id", name="uq_messages_channel_external_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"))
    sender_type = Column(Text, nullable=False)  # lead, ai, staff, system
    content = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")
    channel = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="received")  # received, pending, sent, delivered, read, failed
    external_id = Column(Text)
    external_timestamp = Column(TIMESTAMP(timezone=True))
    error_message = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True))
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
