import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tistis_messaging.database import Base

# Lead column holding the sender identifier for each channel.
LEAD_IDENTIFIER_COLUMNS = {
    "whatsapp": "phone_normalized",
    "instagram": "instagram_psid",
    "facebook": "facebook_psid",
    "tiktok": "tiktok_open_id",
}


class Lead(Base):
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    branch_id = Column(UUID(as_uuid=True))
    name = Column(Text)
    phone_normalized = Column(Text)
    instagram_psid = Column(Text)
    facebook_psid = Column(Text)
    tiktok_open_id = Column(Text)
    source = Column(Text)  # channel the lead first wrote from
    status = Column(Text, nullable=False, default="new")
    classification = Column(Text, nullable=False, default="warm")  # hot, warm, cold
    score = Column(Integer, default=50)
    last_interaction_at = Column(TIMESTAMP(timezone=True))
    deleted_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversations = relationship("Conversation", back_populates="lead")

    def identifier_for(self, channel: str) -> str | None:
        column = LEAD_IDENTIFIER_COLUMNS.get(channel)
        return getattr(self, column) if column else None
