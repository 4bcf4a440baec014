import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from tistis_messaging.database import Base


class ChannelRateLimit(Base):
    __tablename__ = "channel_rate_limits"
    __table_args__ = (
        UniqueConstraint("channel_connection_id", "window_start", name="uq_channel_rate_limits_window"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel_connection_id = Column(UUID(as_uuid=True), ForeignKey("channel_connections.id"), nullable=False)
    channel = Column(Text, nullable=False)
    window_start = Column(TIMESTAMP(timezone=True), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
