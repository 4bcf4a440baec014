from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import Conversation, Lead, Message
from tistis_messaging.services.alert_service import alert_escalation
from tistis_messaging.services.job_queue_service import cancel_pending_ai_jobs, enqueue_send_job
from tistis_messaging.services.message_service import save_outbound_message
from tistis_messaging.services.state_machine import ConversationStatus, transition

logger = get_logger("escalation_service")


class ConversationNotFoundError(Exception):
    pass


class StaffMessageError(Exception):
    """A staff reply cannot be delivered on the conversation's channel."""


def get_conversation(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def escalate_conversation(db: Session, conversation: Conversation, reason: str) -> int:
    """Hand the conversation to a human. Returns the number of AI jobs cancelled.

    Raises InvalidTransitionError when the conversation is already closed out.
    """
    now = datetime.now(timezone.utc)
    if conversation.status != ConversationStatus.ESCALATED.value:
        conversation.status = transition(ConversationStatus(conversation.status), ConversationStatus.ESCALATED).value
    conversation.ai_handling = False
    conversation.escalation_reason = reason
    conversation.escalated_at = now
    conversation.updated_at = now
    db.flush()

    cancelled = cancel_pending_ai_jobs(db, conversation.id, reason="escalated")
    logger.info(
        "Conversation escalated",
        extra={"context": {"conversation_id": str(conversation.id), "reason": reason, "cancelled_jobs": cancelled}},
    )
    alert_escalation(conversation.id, conversation.tenant_id, reason)
    return cancelled


def takeover(db: Session, conversation_id: UUID, staff_id: Optional[str] = None) -> Tuple[Conversation, int]:
    """A staff member takes over: AI stops answering and queued AI replies are dropped."""
    conversation = get_conversation(db, conversation_id)
    conversation.ai_handling = False
    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()

    cancelled = cancel_pending_ai_jobs(db, conversation.id, reason="human_takeover")
    logger.info(
        "Conversation taken over by staff",
        extra={"context": {"conversation_id": str(conversation.id), "staff_id": staff_id, "cancelled_jobs": cancelled}},
    )
    return conversation, cancelled


def release(db: Session, conversation_id: UUID) -> Conversation:
    """Return the conversation to the AI agent."""
    conversation = get_conversation(db, conversation_id)
    if conversation.status == ConversationStatus.ESCALATED.value:
        conversation.status = transition(ConversationStatus.ESCALATED, ConversationStatus.ACTIVE).value
        conversation.escalation_reason = None
    conversation.ai_handling = True
    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()
    logger.info("Conversation released to AI", extra={"context": {"conversation_id": str(conversation.id)}})
    return conversation


def send_staff_message(
    db: Session,
    conversation_id: UUID,
    content: str,
    staff_id: Optional[str] = None,
) -> Tuple[Message, UUID]:
    """Store a staff reply and queue it for delivery. Returns ``(message, send_job_id)``."""
    conversation = get_conversation(db, conversation_id)
    if not conversation.channel_connection_id:
        raise StaffMessageError("Conversation has no channel connection")

    lead = db.query(Lead).filter(Lead.id == conversation.lead_id).first()
    recipient_id = lead.identifier_for(conversation.channel) if lead else None
    if not recipient_id:
        raise StaffMessageError(f"Lead has no {conversation.channel} identifier")

    conversation.ai_handling = False
    cancel_pending_ai_jobs(db, conversation.id, reason="human_intervention")

    message = save_outbound_message(
        db,
        conversation=conversation,
        sender_type="staff",
        content=content,
        message_metadata={"staff_id": staff_id} if staff_id else {},
    )
    job_id = enqueue_send_job(
        db,
        channel=conversation.channel,
        tenant_id=conversation.tenant_id,
        conversation_id=conversation.id,
        lead_id=conversation.lead_id,
        message_id=message.id,
        recipient_id=recipient_id,
        content=content,
        channel_connection_id=conversation.channel_connection_id,
    )
    return message, job_id
