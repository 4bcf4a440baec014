import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class LeadScoreHistory(Base):
    __tablename__ = "lead_score_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"))
    previous_score = Column(Integer, nullable=False)
    new_score = Column(Integer, nullable=False)
    score_change = Column(Integer, nullable=False)
    signal_name = Column(Text)
    change_source = Column(Text, nullable=False, default="ai_detection")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
