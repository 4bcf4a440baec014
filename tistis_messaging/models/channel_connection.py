import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tistis_messaging.database import Base


class ChannelConnection(Base):
    __tablename__ = "channel_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    branch_id = Column(UUID(as_uuid=True))
    channel = Column(Text, nullable=False)  # whatsapp, instagram, facebook, tiktok
    status = Column(Text, nullable=False, default="connected")  # connected, disconnected, error
    ai_enabled = Column(Boolean, nullable=False, default=True)

    whatsapp_phone_number_id = Column(Text)
    whatsapp_access_token = Column(Text)
    instagram_page_id = Column(Text)
    instagram_access_token = Column(Text)
    facebook_page_id = Column(Text)
    facebook_access_token = Column(Text)
    tiktok_client_key = Column(Text)
    tiktok_access_token = Column(Text)
    token_expires_at = Column(TIMESTAMP(timezone=True))

    first_message_delay_seconds = Column(Integer, nullable=False, default=0)
    subsequent_message_delay_seconds = Column(Integer, nullable=False, default=0)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    tenant = relationship("Tenant", back_populates="channel_connections")

    def access_token(self) -> str | None:
        return {
            "whatsapp": self.whatsapp_access_token,
            "instagram": self.instagram_access_token,
            "facebook": self.facebook_access_token,
            "tiktok": self.tiktok_access_token,
        }.get(self.channel)
