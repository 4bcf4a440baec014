from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import Job
from tistis_messaging.services.alert_service import alert_job_failed
from tistis_messaging.services.conversation_service import acquire_advisory_lock
from tistis_messaging.services.state_machine import JobStatus

logger = get_logger("job_queue")

AI_RESPONSE_JOB = "ai_response"
SEND_JOB_PREFIX = "send_"

RESPONSE_PRIORITY = 1
DEFAULT_MAX_ATTEMPTS = 3
ERROR_MAX_LENGTH = 500


def send_job_type(channel: str) -> str:
    return f"{SEND_JOB_PREFIX}{channel}"


def is_send_job(job_type: str) -> bool:
    return job_type.startswith(SEND_JOB_PREFIX)


def enqueue_ai_response_job(
    db: Session,
    *,
    tenant_id: UUID,
    conversation_id: UUID,
    lead_id: UUID,
    message_id: UUID,
    channel: str,
    channel_connection_id: UUID,
    delay_seconds: float,
    debounce_seconds: float,
) -> tuple[UUID, bool]:
    """Queue an AI reply for ``message_id``, merging into a pending job for the same conversation.

    Returns ``(job_id, coalesced)``. A burst of inbound messages keeps pushing
    the pending job's ``scheduled_for`` forward so the AI answers once, after
    the lead stops typing.
    """
    acquire_advisory_lock(db, f"ai_job:{conversation_id}")

    now = datetime.now(timezone.utc)
    pending = (
        db.query(Job)
        .filter(
            Job.conversation_id == conversation_id,
            Job.job_type == AI_RESPONSE_JOB,
            Job.status == JobStatus.PENDING.value,
        )
        .order_by(Job.created_at.desc())
        .with_for_update()
        .first()
    )

    if pending:
        payload = dict(pending.payload or {})
        message_ids = list(payload.get("message_ids") or [])
        if str(message_id) not in message_ids:
            message_ids.append(str(message_id))
        payload["message_ids"] = message_ids
        payload["message_id"] = str(message_id)
        pending.payload = payload
        debounced_at = now + timedelta(seconds=debounce_seconds)
        if pending.scheduled_for is None or pending.scheduled_for < debounced_at:
            pending.scheduled_for = debounced_at
        pending.updated_at = now
        db.flush()
        logger.info(
            "AI job coalesced",
            extra={
                "context": {
                    "job_id": str(pending.id),
                    "conversation_id": str(conversation_id),
                    "messages": len(message_ids),
                }
            },
        )
        return pending.id, True

    job = Job(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        job_type=AI_RESPONSE_JOB,
        payload={
            "tenant_id": str(tenant_id),
            "conversation_id": str(conversation_id),
            "lead_id": str(lead_id),
            "message_id": str(message_id),
            "message_ids": [str(message_id)],
            "channel": channel,
            "channel_connection_id": str(channel_connection_id),
        },
        status=JobStatus.PENDING.value,
        priority=RESPONSE_PRIORITY,
        attempts=0,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        scheduled_for=now + timedelta(seconds=max(delay_seconds, debounce_seconds)),
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()
    logger.info(
        "AI job queued",
        extra={"context": {"job_id": str(job.id), "conversation_id": str(conversation_id)}},
    )
    return job.id, False


def enqueue_send_job(
    db: Session,
    *,
    channel: str,
    tenant_id: UUID,
    conversation_id: UUID,
    lead_id: UUID,
    message_id: UUID,
    recipient_id: str,
    content: str,
    channel_connection_id: UUID,
) -> UUID:
    now = datetime.now(timezone.utc)
    job = Job(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        job_type=send_job_type(channel),
        payload={
            "tenant_id": str(tenant_id),
            "conversation_id": str(conversation_id),
            "lead_id": str(lead_id),
            "message_id": str(message_id),
            "channel": channel,
            "recipient_id": recipient_id,
            "content": content,
            "channel_connection_id": str(channel_connection_id),
        },
        status=JobStatus.PENDING.value,
        priority=RESPONSE_PRIORITY,
        attempts=0,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        scheduled_for=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()
    logger.info("Send job queued", extra={"context": {"job_id": str(job.id), "channel": channel}})
    return job.id


def claim_next_job(
    db: Session,
    *,
    job_types: Optional[list[str]] = None,
    tenant_id: Optional[UUID] = None,
) -> Optional[dict[str, Any]]:
    """Atomically move the most urgent due job to ``processing``.

    Ordering is priority then scheduled_for. Rows locked by another worker are
    skipped, so concurrent workers never claim the same job.
    """
    filters = ["status = 'pending'", "scheduled_for <= NOW()"]
    params: dict[str, Any] = {}
    if job_types:
        filters.append("job_type = ANY(:job_types)")
        params["job_types"] = list(job_types)
    if tenant_id:
        filters.append("tenant_id = :tenant_id")
        params["tenant_id"] = tenant_id

    row = (
        db.execute(
            text(
                f"""
                UPDATE job_queue
                SET status = 'processing',
                    started_at = NOW(),
                    attempts = attempts + 1,
                    updated_at = NOW()
                WHERE id = (
                    SELECT id
                    FROM job_queue
                    WHERE {' AND '.join(filters)}
                    ORDER BY priority ASC, scheduled_for ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, tenant_id, conversation_id, job_type, payload,
                          attempts, max_attempts, cached_result, created_at
                """
            ),
            params,
        )
        .mappings()
        .first()
    )
    db.commit()
    return dict(row) if row else None


def complete_job(db: Session, job_id: UUID, result: Optional[dict] = None) -> None:
    db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'completed',
                result = CAST(:result AS JSONB),
                completed_at = NOW(),
                error_message = NULL,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": job_id, "result": _to_json(result)},
    )


def retry_delay_seconds(attempts: int, retry_backoff_seconds: float) -> float:
    return retry_backoff_seconds * (2 ** max(attempts - 1, 0))


def fail_job(
    db: Session,
    job: dict[str, Any],
    error: str,
    *,
    retry_backoff_seconds: float,
    retryable: bool = True,
) -> str:
    """Schedule a retry with exponential backoff, or fail the job for good.

    Returns the resulting status.
    """
    attempts = int(job.get("attempts") or 0)
    max_attempts = int(job.get("max_attempts") or DEFAULT_MAX_ATTEMPTS)
    error = (error or "unknown error")[:ERROR_MAX_LENGTH]

    if not retryable or attempts >= max_attempts:
        db.execute(
            text(
                """
                UPDATE job_queue
                SET status = 'failed',
                    error_message = :error,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE id = :id
                """
            ),
            {"id": job["id"], "error": error},
        )
        logger.error(
            "Job failed",
            extra={"context": {"job_id": str(job["id"]), "job_type": job.get("job_type"), "error": error}},
        )
        alert_job_failed(job["id"], job.get("job_type") or "", attempts, error)
        return JobStatus.FAILED.value

    delay = retry_delay_seconds(attempts, retry_backoff_seconds)
    db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'pending',
                error_message = :error,
                scheduled_for = :scheduled_for,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {
            "id": job["id"],
            "error": error,
            "scheduled_for": datetime.now(timezone.utc) + timedelta(seconds=delay),
        },
    )
    logger.warning(
        "Job retry scheduled",
        extra={"context": {"job_id": str(job["id"]), "attempts": attempts, "delay_seconds": delay}},
    )
    return JobStatus.PENDING.value


def defer_job(db: Session, job_id: UUID, delay_seconds: float, reason: str) -> None:
    """Put a claimed job back without consuming an attempt."""
    db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'pending',
                attempts = GREATEST(attempts - 1, 0),
                scheduled_for = :scheduled_for,
                error_message = :reason,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {
            "id": job_id,
            "reason": reason[:ERROR_MAX_LENGTH],
            "scheduled_for": datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
        },
    )


def cancel_pending_ai_jobs(db: Session, conversation_id: UUID, reason: str = "human_intervention") -> int:
    result = db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'cancelled',
                error_message = :reason,
                completed_at = NOW(),
                updated_at = NOW()
            WHERE conversation_id = :conversation_id
              AND job_type = 'ai_response'
              AND status = 'pending'
            """
        ),
        {"conversation_id": conversation_id, "reason": reason},
    )
    if result.rowcount:
        logger.info(
            "Pending AI jobs cancelled",
            extra={"context": {"conversation_id": str(conversation_id), "count": result.rowcount, "reason": reason}},
        )
    return result.rowcount


def cache_job_ai_response(db: Session, job_id: UUID, ai_response: str, metadata: dict) -> None:
    """Persist the generated reply so a retry of this job reuses it instead of calling the model again."""
    db.execute(
        text(
            """
            UPDATE job_queue
            SET cached_result = CAST(:cached AS JSONB),
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": job_id, "cached": _to_json({"ai_response": ai_response, "metadata": metadata})},
    )
    db.commit()


def requeue_stale_jobs(db: Session, *, stale_after_seconds: float) -> dict[str, int]:
    """Recover jobs whose worker died mid-processing."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
    requeued = db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'pending',
                error_message = 'stale_processing_requeued',
                updated_at = NOW()
            WHERE status = 'processing'
              AND started_at < :cutoff
              AND attempts < max_attempts
            """
        ),
        {"cutoff": cutoff},
    ).rowcount
    failed = db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'failed',
                error_message = 'stale_processing_exhausted',
                completed_at = NOW(),
                updated_at = NOW()
            WHERE status = 'processing'
              AND started_at < :cutoff
              AND attempts >= max_attempts
            """
        ),
        {"cutoff": cutoff},
    ).rowcount
    db.commit()
    if requeued or failed:
        logger.warning("Stale jobs recovered", extra={"context": {"requeued": requeued, "failed": failed}})
    return {"requeued": requeued, "failed": failed}


def get_queue_stats(db: Session) -> dict[str, Any]:
    rows = (
        db.execute(
            text(
                """
                SELECT job_type, status, COUNT(*) AS count
                FROM job_queue
                GROUP BY job_type, status
                """
            )
        )
        .mappings()
        .all()
    )
    by_status = {status.value: 0 for status in JobStatus}
    by_type: dict[str, dict[str, int]] = {}
    for row in rows:
        by_status[row["status"]] = by_status.get(row["status"], 0) + row["count"]
        by_type.setdefault(row["job_type"], {})[row["status"]] = row["count"]

    oldest_pending = db.execute(
        text("SELECT MIN(scheduled_for) FROM job_queue WHERE status = 'pending' AND scheduled_for <= NOW()")
    ).scalar()
    oldest_pending_seconds = None
    if oldest_pending is not None:
        oldest_pending_seconds = round((datetime.now(timezone.utc) - oldest_pending).total_seconds(), 1)

    return {
        "by_status": by_status,
        "by_type": by_type,
        "total": sum(by_status.values()),
        "oldest_due_pending_seconds": oldest_pending_seconds,
    }


def _to_json(value: Optional[dict]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


