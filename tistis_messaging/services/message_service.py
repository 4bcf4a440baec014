from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import Conversation, Message
from tistis_messaging.services.channels import ParsedInboundMessage, ParsedStatusUpdate

logger = get_logger("message_service")

# Delivery statuses only move forward; "failed" is applied from any state.
STATUS_ORDER = ["pending", "sent", "delivered", "read"]

HISTORY_LIMIT = 10


def should_apply_status(current: Optional[str], new: str) -> bool:
    if new == "failed":
        return True
    if new not in STATUS_ORDER:
        return False
    current_index = STATUS_ORDER.index(current) if current in STATUS_ORDER else -1
    return STATUS_ORDER.index(new) > current_index


def _touch_conversation(db: Session, conversation_id: UUID, *, increment: bool) -> None:
    db.execute(
        text(
            """
            UPDATE conversations
            SET last_message_at = NOW(),
                updated_at = NOW(),
                message_count = message_count + :increment
            WHERE id = :id
            """
        ),
        {"id": conversation_id, "increment": 1 if increment else 0},
    )


def save_incoming_message(
    db: Session,
    *,
    conversation_id: UUID,
    lead_id: UUID,
    parsed: ParsedInboundMessage,
) -> Optional[UUID]:
    """Insert an inbound message. Returns None when the external id was already stored."""
    metadata = dict(parsed.metadata)
    if parsed.media_id:
        metadata["media_id"] = parsed.media_id
    if parsed.media_url:
        metadata["media_url"] = parsed.media_url
    if parsed.media_type:
        metadata["media_type"] = parsed.media_type

    messages = Message.__table__
    stmt = (
        insert(messages)
        .values(
            conversation_id=conversation_id,
            lead_id=lead_id,
            sender_type="lead",
            content=parsed.content,
            message_type=parsed.message_type,
            channel=parsed.channel,
            status="received",
            external_id=parsed.external_id,
            external_timestamp=parsed.timestamp,
            metadata=metadata,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["channel", "external_id"])
        .returning(messages.c.id)
    )
    message_id = db.execute(stmt).scalar()
    if message_id is None:
        logger.info(
            "Duplicate inbound message ignored",
            extra={"context": {"channel": parsed.channel, "external_id": parsed.external_id}},
        )
        return None

    _touch_conversation(db, conversation_id, increment=True)
    return message_id


def save_outbound_message(
    db: Session,
    *,
    conversation: Conversation,
    sender_type: str,
    content: str,
    message_metadata: Optional[dict] = None,
) -> Message:
    """Store an AI or staff reply as ``pending`` until the send job delivers it."""
    message = Message(
        conversation_id=conversation.id,
        lead_id=conversation.lead_id,
        sender_type=sender_type,
        content=content,
        message_type="text",
        channel=conversation.channel,
        status="pending",
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    _touch_conversation(db, conversation.id, increment=True)
    return message


def apply_status_update(db: Session, channel: str, update: ParsedStatusUpdate) -> bool:
    """Apply a delivery receipt to the outbound message with the same external id."""
    message = (
        db.query(Message)
        .filter(Message.channel == channel, Message.external_id == update.external_id)
        .first()
    )
    if not message:
        logger.info(
            "Status update for unknown message",
            extra={"context": {"channel": channel, "external_id": update.external_id}},
        )
        return False

    if not should_apply_status(message.status, update.status):
        return False

    message.status = update.status
    metadata = dict(message.message_metadata or {})
    metadata["status_updated_at"] = datetime.now(timezone.utc).isoformat()
    if update.timestamp:
        metadata["status_timestamp"] = update.timestamp.isoformat()
    message.message_metadata = metadata
    if update.status == "failed":
        message.error_message = update.error_message
    db.flush()
    return True


def mark_message_sent(db: Session, message_id: UUID, external_id: Optional[str]) -> None:
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        return
    message.status = "sent"
    message.external_id = external_id
    message.sent_at = datetime.now(timezone.utc)
    message.error_message = None
    db.flush()


def mark_message_failed(db: Session, message_id: UUID, error: str) -> None:
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        return
    message.status = "failed"
    message.error_message = error
    db.flush()


def get_message_texts(db: Session, message_ids: list) -> list[str]:
    """Contents of ``message_ids`` in arrival order."""
    if not message_ids:
        return []
    messages = (
        db.query(Message)
        .filter(Message.id.in_(message_ids))
        .order_by(Message.created_at.asc())
        .all()
    )
    return [m.content for m in messages if m.content and m.content.strip()]


def get_recent_history(db: Session, conversation_id: UUID, *, exclude_ids: Optional[list] = None) -> list[Message]:
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if exclude_ids:
        query = query.filter(Message.id.notin_(exclude_ids))
    recent = query.order_by(Message.created_at.desc()).limit(HISTORY_LIMIT).all()
    return list(reversed(recent))
