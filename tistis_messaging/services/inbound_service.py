"""Inbound webhook processing: parse, resolve lead and conversation, store, queue the AI reply.

Redis dedup is awaited on the event loop; database work runs in worker threads.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from tistis_messaging.config import settings
from tistis_messaging.database import SessionLocal
from tistis_messaging.logging_config import get_logger
from tistis_messaging.services.channel_connection_service import get_channel_delay_seconds
from tistis_messaging.services.channels import ParsedInboundMessage, ParsedStatusUpdate, extract_batches
from tistis_messaging.services.conversation_service import (
    TenantContext,
    find_or_create_conversation,
    find_or_create_lead,
    get_tenant_context,
)
from tistis_messaging.services.dead_letter_service import (
    claim_due_dead_letters,
    enqueue_dead_letter,
    mark_for_retry,
    resolve_dead_letter,
)
from tistis_messaging.services.dedup_service import is_duplicate_external_id, release_external_id
from tistis_messaging.services.job_queue_service import enqueue_ai_response_job
from tistis_messaging.services.message_service import apply_status_update, save_incoming_message

logger = get_logger("inbound_service")


@dataclass
class ProcessResult:
    messages_processed: int = 0
    statuses_processed: int = 0
    duplicates: int = 0
    jobs_enqueued: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _store_message(db: Session, context: TenantContext, parsed: ParsedInboundMessage) -> tuple[bool, bool]:
    """Persist one message and queue its AI reply. Returns (stored, ai_job_queued)."""
    connection = context.connection
    lead, _ = find_or_create_lead(
        db,
        tenant_id=context.tenant_id,
        branch_id=connection.branch_id,
        channel=parsed.channel,
        identifier=parsed.sender_id,
        contact_name=parsed.contact_name,
    )
    resolution = find_or_create_conversation(
        db,
        tenant_id=context.tenant_id,
        branch_id=connection.branch_id,
        lead_id=lead.id,
        channel=parsed.channel,
        connection=connection,
    )
    conversation = resolution.conversation
    is_first_message = resolution.is_new or not conversation.message_count

    message_id = save_incoming_message(db, conversation_id=conversation.id, lead_id=lead.id, parsed=parsed)
    if message_id is None:
        db.commit()
        return False, False

    queued = bool(context.ai_enabled and conversation.ai_handling)
    if queued:
        enqueue_ai_response_job(
            db,
            tenant_id=context.tenant_id,
            conversation_id=conversation.id,
            lead_id=lead.id,
            message_id=message_id,
            channel=parsed.channel,
            channel_connection_id=connection.id,
            delay_seconds=get_channel_delay_seconds(connection, is_first_message=is_first_message),
            debounce_seconds=settings.ai_debounce_seconds,
        )
    db.commit()
    return True, queued


def _apply_status(db: Session, channel: str, update: ParsedStatusUpdate) -> None:
    apply_status_update(db, channel, update)
    db.commit()


async def _process_message(
    db: Session,
    context: TenantContext,
    parsed: ParsedInboundMessage,
    result: ProcessResult,
) -> None:
    if await is_duplicate_external_id(parsed.channel, parsed.external_id):
        result.duplicates += 1
        return

    stored, queued = await asyncio.to_thread(_store_message, db, context, parsed)
    if not stored:
        result.duplicates += 1
        return
    result.messages_processed += 1
    if queued:
        result.jobs_enqueued += 1


async def process_webhook(db: Session, channel: str, tenant_slug: str, payload: dict) -> ProcessResult:
    """Process one webhook payload. Each message commits on its own.

    Re-running the same payload is safe: stored external ids are skipped.
    """
    result = ProcessResult()

    for batch in extract_batches(channel, payload):
        context = await asyncio.to_thread(get_tenant_context, db, tenant_slug, channel, batch.account_id)
        if not context:
            result.errors.append(f"No tenant context for {channel} account {batch.account_id}")
            continue

        for parsed in batch.messages:
            try:
                await _process_message(db, context, parsed, result)
            except Exception as e:
                await asyncio.to_thread(db.rollback)
                await release_external_id(parsed.channel, parsed.external_id)
                logger.error(
                    "Inbound message processing failed",
                    extra={
                        "context": {
                            "channel": channel,
                            "tenant_slug": tenant_slug,
                            "external_id": parsed.external_id,
                            "error": str(e),
                        }
                    },
                )
                result.errors.append(f"{parsed.external_id}: {e}")

        for update in batch.statuses:
            try:
                await asyncio.to_thread(_apply_status, db, channel, update)
                result.statuses_processed += 1
            except Exception as e:
                await asyncio.to_thread(db.rollback)
                logger.error(
                    "Status update failed",
                    extra={"context": {"channel": channel, "external_id": update.external_id, "error": str(e)}},
                )
                result.errors.append(f"status {update.external_id}: {e}")

    logger.info(
        "Webhook processed",
        extra={
            "context": {
                "channel": channel,
                "tenant_slug": tenant_slug,
                "messages": result.messages_processed,
                "statuses": result.statuses_processed,
                "duplicates": result.duplicates,
                "errors": len(result.errors),
            }
        },
    )
    return result


def _store_dead_letter(
    db: Session,
    channel: str,
    tenant_slug: str,
    payload: dict,
    headers: Optional[dict],
    error_message: str,
) -> None:
    enqueue_dead_letter(
        db,
        channel=channel,
        tenant_slug=tenant_slug,
        payload=payload,
        headers=headers,
        error_message=error_message,
    )
    db.commit()


async def handle_webhook_in_background(
    channel: str,
    tenant_slug: str,
    payload: dict,
    headers: Optional[dict] = None,
) -> None:
    """Background-task entry point: own session, failures go to the dead-letter queue."""
    db = SessionLocal()
    try:
        try:
            result = await process_webhook(db, channel, tenant_slug, payload)
            error_message = "; ".join(result.errors) if result.errors else None
        except Exception as e:
            await asyncio.to_thread(db.rollback)
            logger.error(
                "Webhook processing crashed",
                extra={"context": {"channel": channel, "tenant_slug": tenant_slug, "error": str(e)}},
            )
            error_message = f"{type(e).__name__}: {e}"

        if error_message:
            await asyncio.to_thread(_store_dead_letter, db, channel, tenant_slug, payload, headers, error_message)
    finally:
        await asyncio.to_thread(db.close)


def _record_replay(db: Session, dead_letter_id, error_message: Optional[str]) -> str:
    """Resolve or reschedule a replayed dead letter; returns the summary bucket."""
    if error_message:
        status = mark_for_retry(db, dead_letter_id, error_message)
        outcome = "failed" if status == "failed" else "rescheduled"
    else:
        resolve_dead_letter(db, dead_letter_id, notes="replayed")
        outcome = "resolved"
    db.commit()
    return outcome


async def replay_dead_letters(db: Session, limit: int = 10) -> dict[str, Any]:
    """Re-run due dead letters through the inbound processor."""
    summary = {"claimed": 0, "resolved": 0, "rescheduled": 0, "failed": 0}
    for row in await asyncio.to_thread(claim_due_dead_letters, db, limit=limit):
        summary["claimed"] += 1
        try:
            result = await process_webhook(db, row["channel"], row["tenant_slug"], row["payload"])
            error_message = "; ".join(result.errors) if result.errors else None
        except Exception as e:
            await asyncio.to_thread(db.rollback)
            error_message = f"{type(e).__name__}: {e}"

        outcome = await asyncio.to_thread(_record_replay, db, row["id"], error_message)
        summary[outcome] += 1

    if summary["claimed"]:
        logger.info("Dead letters replayed", extra={"context": summary})
    return summary
