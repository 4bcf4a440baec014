"""Dead-letter queue for inbound webhooks whose processing failed.

Inbound processing is idempotent (duplicate external ids are ignored), so a
dead letter can be replayed as many times as needed.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import WebhookDeadLetter
from tistis_messaging.services.alert_service import alert_warning

logger = get_logger("dead_letter_service")

RETRY_BASE_DELAY = timedelta(minutes=5)
RETRY_MULTIPLIER = 6
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETENTION_DAYS = 30

SENSITIVE_HEADERS = {"authorization", "cookie", "x-hub-signature", "x-hub-signature-256", "x-tiktok-signature"}


def sanitize_headers(headers: Optional[dict]) -> dict[str, str]:
    if not headers:
        return {}
    return {k: v for k, v in headers.items() if k.lower() not in SENSITIVE_HEADERS}


def enqueue_dead_letter(
    db: Session,
    *,
    channel: str,
    tenant_slug: str,
    payload: Any,
    error_message: str,
    headers: Optional[dict] = None,
    tenant_id: Optional[UUID] = None,
) -> WebhookDeadLetter:
    now = datetime.now(timezone.utc)
    dead_letter = WebhookDeadLetter(
        channel=channel,
        tenant_slug=tenant_slug,
        tenant_id=tenant_id,
        payload=payload if payload is not None else {},
        headers=sanitize_headers(headers),
        error_message=error_message[:2000],
        retry_count=0,
        max_retries=DEFAULT_MAX_RETRIES,
        next_retry_at=now + next_retry_delay(0),
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(dead_letter)
    db.flush()
    logger.warning(
        "Webhook moved to dead-letter queue",
        extra={
            "context": {
                "dead_letter_id": str(dead_letter.id),
                "channel": channel,
                "tenant_slug": tenant_slug,
                "error": error_message[:300],
            }
        },
    )
    return dead_letter


def next_retry_delay(retry_count: int) -> timedelta:
    """Wait before the next replay given ``retry_count`` failed replays: 5 minutes, 30 minutes, 3 hours."""
    return RETRY_BASE_DELAY * (RETRY_MULTIPLIER ** max(retry_count, 0))


def claim_due_dead_letters(db: Session, limit: int = 10) -> list[dict[str, Any]]:
    """Move due ``pending`` dead letters to ``processing``, oldest ``next_retry_at`` first."""
    rows = (
        db.execute(
            text(
                """
                WITH due AS (
                    SELECT id
                    FROM webhook_dead_letters
                    WHERE status = 'pending'
                      AND next_retry_at <= NOW()
                      AND retry_count < max_retries
                    ORDER BY next_retry_at ASC
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE webhook_dead_letters
                SET status = 'processing',
                    updated_at = NOW()
                FROM due
                WHERE webhook_dead_letters.id = due.id
                RETURNING webhook_dead_letters.id,
                          webhook_dead_letters.channel,
                          webhook_dead_letters.tenant_slug,
                          webhook_dead_letters.payload,
                          webhook_dead_letters.retry_count,
                          webhook_dead_letters.max_retries
                """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def get_pending_dead_letters(db: Session, limit: int = 50) -> list[WebhookDeadLetter]:
    return (
        db.query(WebhookDeadLetter)
        .filter(WebhookDeadLetter.status == "pending")
        .order_by(WebhookDeadLetter.next_retry_at.asc())
        .limit(limit)
        .all()
    )


def mark_for_retry(db: Session, dead_letter_id: UUID, error_message: str) -> Optional[str]:
    """Record a failed replay. Returns the new status, or None if the row is gone."""
    dead_letter = db.query(WebhookDeadLetter).filter(WebhookDeadLetter.id == dead_letter_id).first()
    if not dead_letter:
        return None

    now = datetime.now(timezone.utc)
    dead_letter.retry_count = (dead_letter.retry_count or 0) + 1
    dead_letter.error_message = error_message[:2000]
    dead_letter.updated_at = now

    if dead_letter.retry_count >= (dead_letter.max_retries or DEFAULT_MAX_RETRIES):
        dead_letter.status = "failed"
        dead_letter.next_retry_at = None
        logger.error(
            "Dead letter exhausted retries",
            extra={"context": {"dead_letter_id": str(dead_letter_id), "retries": dead_letter.retry_count}},
        )
        alert_warning(
            "Webhook dead letter exhausted retries",
            {"dead_letter_id": str(dead_letter_id), "channel": dead_letter.channel, "error": error_message[:300]},
        )
    else:
        dead_letter.status = "pending"
        dead_letter.next_retry_at = now + next_retry_delay(dead_letter.retry_count)

    db.flush()
    return dead_letter.status


def resolve_dead_letter(
    db: Session,
    dead_letter_id: UUID,
    *,
    notes: Optional[str] = None,
    status: str = "completed",
) -> bool:
    """Close a dead letter as ``completed`` (replayed) or ``dismissed`` (dropped by an operator)."""
    if status not in ("completed", "dismissed"):
        raise ValueError(f"Invalid resolution status: {status}")

    dead_letter = db.query(WebhookDeadLetter).filter(WebhookDeadLetter.id == dead_letter_id).first()
    if not dead_letter:
        return False

    now = datetime.now(timezone.utc)
    dead_letter.status = status
    dead_letter.resolved_at = now
    dead_letter.resolution_notes = notes
    dead_letter.next_retry_at = None
    dead_letter.updated_at = now
    db.flush()
    return True


def reschedule_dead_letter(db: Session, dead_letter_id: UUID, *, retry_at: Optional[datetime] = None) -> bool:
    """Put a failed or dismissed dead letter back in the queue with its retry count reset."""
    dead_letter = db.query(WebhookDeadLetter).filter(WebhookDeadLetter.id == dead_letter_id).first()
    if not dead_letter:
        return False

    now = datetime.now(timezone.utc)
    dead_letter.status = "pending"
    dead_letter.retry_count = 0
    dead_letter.next_retry_at = retry_at or now
    dead_letter.resolved_at = None
    dead_letter.updated_at = now
    db.flush()
    return True


def requeue_stuck_dead_letters(db: Session, stuck_after_minutes: int = 15) -> int:
    """Return ``processing`` rows left behind by a crashed replay to ``pending``."""
    result = db.execute(
        text(
            """
            UPDATE webhook_dead_letters
            SET status = 'pending',
                next_retry_at = NOW(),
                updated_at = NOW()
            WHERE status = 'processing'
              AND updated_at < NOW() - make_interval(mins => :minutes)
            """
        ),
        {"minutes": stuck_after_minutes},
    )
    return result.rowcount


def cleanup_dead_letters(db: Session, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
    """Delete resolved dead letters older than the retention window."""
    result = db.execute(
        text(
            """
            DELETE FROM webhook_dead_letters
            WHERE status IN ('completed', 'dismissed')
              AND COALESCE(resolved_at, updated_at) < NOW() - make_interval(days => :days)
            """
        ),
        {"days": older_than_days},
    )
    db.commit()
    if result.rowcount:
        logger.info("Dead letters cleaned up", extra={"context": {"deleted": result.rowcount}})
    return result.rowcount


def get_dead_letter_stats(db: Session) -> dict[str, Any]:
    rows = (
        db.execute(
            text(
                """
                SELECT channel, status, COUNT(*) AS count
                FROM webhook_dead_letters
                GROUP BY channel, status
                """
            )
        )
        .mappings()
        .all()
    )
    by_status = {s: 0 for s in ("pending", "processing", "completed", "failed", "dismissed")}
    by_channel: dict[str, int] = {}
    for row in rows:
        by_status[row["status"]] = by_status.get(row["status"], 0) + row["count"]
        by_channel[row["channel"]] = by_channel.get(row["channel"], 0) + row["count"]
    return {"by_status": by_status, "by_channel": by_channel, "total": sum(by_status.values())}
