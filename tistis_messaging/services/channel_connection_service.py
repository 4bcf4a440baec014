from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import ChannelConnection

logger = get_logger("channel_connection_service")


@dataclass
class ConnectionValidation:
    is_valid: bool
    connection: Optional[ChannelConnection] = None
    error_reason: Optional[str] = None
    # A disconnected channel will not come back by retrying; fail the job at once.
    retryable: bool = True


class ConnectionInvalidError(Exception):
    def __init__(self, validation: ConnectionValidation):
        self.validation = validation
        super().__init__(f"Channel connection invalid: {validation.error_reason}")


def validate_connection_for_job(
    db: Session,
    connection_id: UUID,
    *,
    expected_channel: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConnectionValidation:
    now = now or datetime.now(timezone.utc)
    connection = db.query(ChannelConnection).filter(ChannelConnection.id == connection_id).first()

    if not connection:
        return ConnectionValidation(is_valid=False, error_reason="connection_not_found", retryable=False)

    if expected_channel and connection.channel != expected_channel:
        return ConnectionValidation(
            is_valid=False, connection=connection, error_reason="channel_mismatch", retryable=False
        )

    if connection.status != "connected":
        logger.warning(
            "Channel connection not connected",
            extra={"context": {"connection_id": str(connection_id), "status": connection.status}},
        )
        return ConnectionValidation(
            is_valid=False,
            connection=connection,
            error_reason=f"connection_{connection.status}",
            retryable=False,
        )

    if connection.token_expires_at and connection.token_expires_at <= now:
        return ConnectionValidation(is_valid=False, connection=connection, error_reason="token_expired")

    return ConnectionValidation(is_valid=True, connection=connection)


def get_channel_delay_seconds(connection: ChannelConnection, *, is_first_message: bool) -> int:
    if is_first_message:
        return int(connection.first_message_delay_seconds or 0)
    return int(connection.subsequent_message_delay_seconds or 0)
