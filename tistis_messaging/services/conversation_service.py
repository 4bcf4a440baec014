"""Tenant context, lead and conversation resolution for inbound messages.

Lead and conversation creation run under transaction-scoped Postgres advisory
locks so concurrent webhooks for the same sender never create duplicates.
The locks are released when the surrounding transaction commits.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import LEAD_IDENTIFIER_COLUMNS, ChannelConnection, Conversation, Lead, Tenant
from tistis_messaging.services.state_machine import (
    OPEN_CONVERSATION_STATUSES,
    REOPENABLE_CONVERSATION_STATUSES,
    ConversationStatus,
)

logger = get_logger("conversation_service")

GENERIC_LEAD_NAMES = {"", "desconocido", "unknown", "usuario tiktok"}

# Channel connection column matched against the account id found in the webhook.
CONNECTION_ACCOUNT_COLUMNS = {
    "whatsapp": "whatsapp_phone_number_id",
    "instagram": "instagram_page_id",
    "facebook": "facebook_page_id",
    "tiktok": "tiktok_client_key",
}


@dataclass
class TenantContext:
    tenant: Tenant
    connection: ChannelConnection

    @property
    def tenant_id(self) -> UUID:
        return self.tenant.id

    @property
    def ai_enabled(self) -> bool:
        return bool(self.connection.ai_enabled)


@dataclass
class ConversationResolution:
    conversation: Conversation
    is_new: bool = False
    was_reopened: bool = False


def acquire_advisory_lock(db: Session, key: str) -> None:
    db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


def get_tenant_context(db: Session, tenant_slug: str, channel: str, account_id: str) -> Optional[TenantContext]:
    """Active tenant by slug plus its connected channel connection for ``account_id``."""
    tenant = db.query(Tenant).filter(Tenant.slug == tenant_slug, Tenant.status == "active").first()
    if not tenant:
        logger.warning("Tenant not found or inactive", extra={"context": {"tenant_slug": tenant_slug}})
        return None

    account_column = getattr(ChannelConnection, CONNECTION_ACCOUNT_COLUMNS[channel])
    connection = (
        db.query(ChannelConnection)
        .filter(
            ChannelConnection.tenant_id == tenant.id,
            ChannelConnection.channel == channel,
            ChannelConnection.status == "connected",
            account_column == account_id,
        )
        .first()
    )
    if not connection:
        logger.warning(
            "Channel connection not found",
            extra={"context": {"tenant_slug": tenant_slug, "channel": channel, "account_id": account_id}},
        )
        return None

    return TenantContext(tenant=tenant, connection=connection)


def is_generic_name(name: Optional[str]) -> bool:
    return (name or "").strip().lower() in GENERIC_LEAD_NAMES


def find_or_create_lead(
    db: Session,
    *,
    tenant_id: UUID,
    branch_id: Optional[UUID],
    channel: str,
    identifier: str,
    contact_name: Optional[str] = None,
) -> tuple[Lead, bool]:
    """Return ``(lead, is_new)`` for the sender ``identifier`` on ``channel``."""
    column_name = LEAD_IDENTIFIER_COLUMNS[channel]
    acquire_advisory_lock(db, f"lead:{tenant_id}:{channel}:{identifier}")

    now = datetime.now(timezone.utc)
    lead = (
        db.query(Lead)
        .filter(
            Lead.tenant_id == tenant_id,
            getattr(Lead, column_name) == identifier,
            Lead.deleted_at.is_(None),
        )
        .first()
    )

    if lead:
        if contact_name and not is_generic_name(contact_name) and is_generic_name(lead.name):
            lead.name = contact_name
        lead.last_interaction_at = now
        db.flush()
        return lead, False

    lead = Lead(
        tenant_id=tenant_id,
        branch_id=branch_id,
        name=contact_name if not is_generic_name(contact_name) else "Desconocido",
        source=channel,
        status="new",
        classification="warm",
        score=50,
        last_interaction_at=now,
    )
    setattr(lead, column_name, identifier)
    db.add(lead)
    db.flush()
    logger.info("Lead created", extra={"context": {"lead_id": str(lead.id), "channel": channel}})
    return lead, True


def find_or_create_conversation(
    db: Session,
    *,
    tenant_id: UUID,
    branch_id: Optional[UUID],
    lead_id: UUID,
    channel: str,
    connection: ChannelConnection,
) -> ConversationResolution:
    acquire_advisory_lock(db, f"conversation:{tenant_id}:{lead_id}:{channel}")

    now = datetime.now(timezone.utc)
    latest = (
        db.query(Conversation)
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.lead_id == lead_id,
            Conversation.channel == channel,
        )
        .order_by(Conversation.started_at.desc())
        .first()
    )

    if latest and latest.status in {s.value for s in OPEN_CONVERSATION_STATUSES}:
        latest.last_message_at = now
        latest.updated_at = now
        db.flush()
        return ConversationResolution(conversation=latest)

    if latest and latest.status in {s.value for s in REOPENABLE_CONVERSATION_STATUSES}:
        latest.status = ConversationStatus.ACTIVE.value
        latest.ai_handling = bool(connection.ai_enabled)
        latest.escalation_reason = None
        latest.last_message_at = now
        latest.updated_at = now
        db.flush()
        logger.info("Conversation reopened", extra={"context": {"conversation_id": str(latest.id)}})
        return ConversationResolution(conversation=latest, was_reopened=True)

    # No conversation yet, or the latest one is escalated: start a fresh thread.
    conversation = Conversation(
        tenant_id=tenant_id,
        branch_id=branch_id,
        lead_id=lead_id,
        channel=channel,
        channel_connection_id=connection.id,
        status=ConversationStatus.ACTIVE.value,
        ai_handling=bool(connection.ai_enabled),
        message_count=0,
        started_at=now,
        last_message_at=now,
    )
    db.add(conversation)
    db.flush()
    logger.info("Conversation created", extra={"context": {"conversation_id": str(conversation.id)}})
    return ConversationResolution(conversation=conversation, is_new=True)
