"""Claimed-job execution: AI replies and outbound channel sends.

Each job runs in its own transaction. Handlers raise to signal failure;
``process_job`` turns the exception into a retry, a deferral or a permanent
failure and commits the queue bookkeeping.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from tistis_messaging.logging_config import JobLoggerAdapter, get_logger
from tistis_messaging.models import Conversation, Lead, Tenant
from tistis_messaging.services.ai_service import (
    AI_UNAVAILABLE_REASON,
    AIGenerationError,
    AIResult,
    fallback_result,
    generate_ai_response,
    log_ai_usage,
    update_lead_score,
)
from tistis_messaging.services.channel_connection_service import ConnectionInvalidError, validate_connection_for_job
from tistis_messaging.services.channels import send_text
from tistis_messaging.services.escalation_service import escalate_conversation
from tistis_messaging.services.job_queue_service import (
    AI_RESPONSE_JOB,
    SEND_JOB_PREFIX,
    cache_job_ai_response,
    claim_next_job,
    complete_job,
    defer_job,
    enqueue_send_job,
    fail_job,
    is_send_job,
)
from tistis_messaging.services.message_service import (
    get_message_texts,
    mark_message_failed,
    mark_message_sent,
    save_outbound_message,
)
from tistis_messaging.services.rate_limit_service import RateLimitedError, check_rate_limit
from tistis_messaging.services.state_machine import ConversationStatus, JobStatus

logger = get_logger("job_processor")

DEFAULT_RETRY_BACKOFF_SECONDS = 30.0


class JobProcessingError(Exception):
    def __init__(self, message: str, *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


@dataclass
class JobOutcome:
    job_id: UUID
    job_type: str
    status: str  # completed | pending (retry) | failed | deferred
    error: Optional[str] = None


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "deferred": self.deferred,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ConnectionInvalidError):
        return exc.validation.retryable
    return getattr(exc, "retryable", True)


def _skipped(reason: str) -> dict:
    return {"skipped": True, "reason": reason}


def handle_ai_response(db: Session, job: dict, job_logger: JobLoggerAdapter) -> dict:
    payload = job.get("payload") or {}
    tenant_id = payload.get("tenant_id") or job.get("tenant_id")
    conversation_id = payload.get("conversation_id") or job.get("conversation_id")

    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant or not tenant.is_active:
        job_logger.info("AI job skipped", context={"reason": "tenant_inactive"})
        return _skipped("tenant_inactive")

    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        return _skipped("conversation_not_found")
    if not conversation.ai_handling or conversation.status == ConversationStatus.ESCALATED.value:
        job_logger.info("AI job skipped", context={"reason": "human_intervention"})
        return _skipped("human_intervention")

    message_ids = payload.get("message_ids") or [payload.get("message_id")]
    cached = job.get("cached_result") or {}
    used_cached_response = bool(cached.get("ai_response"))

    if used_cached_response:
        ai_result = AIResult.from_cache(cached)
        job_logger.info("Using cached AI response")
    else:
        texts = get_message_texts(db, message_ids)
        if not texts:
            return _skipped("no_message_content")
        current_message = " ".join(texts)
        try:
            ai_result = generate_ai_response(
                db, tenant, conversation, current_message, current_message_ids=message_ids
            )
        except AIGenerationError:
            if int(job.get("attempts") or 0) < int(job.get("max_attempts") or 0):
                raise
            job_logger.warning("AI unavailable on final attempt, using fallback reply")
            ai_result = fallback_result(current_message)
        cache_job_ai_response(db, job["id"], ai_result.response, ai_result.to_cache_metadata())

    model = f"cached-{ai_result.model_used}" if used_cached_response else ai_result.model_used
    response_message = save_outbound_message(
        db,
        conversation=conversation,
        sender_type="ai",
        content=ai_result.response,
        message_metadata={
            "intent": ai_result.intent.value,
            "signals": [{"signal": s.signal, "points": s.points} for s in ai_result.signals],
            "model": model,
            "tokens": ai_result.tokens_used,
            "processing_time_ms": ai_result.processing_time_ms,
        },
    )

    if ai_result.signals:
        update_lead_score(db, conversation.lead_id, ai_result.signals, conversation.id)

    if not used_cached_response:
        log_ai_usage(db, tenant.id, conversation.id, ai_result)

    send_reply = True
    if ai_result.escalate:
        escalate_conversation(db, conversation, ai_result.escalate_reason or "escalated")
        # The fallback reply tells the lead a human is coming, so it is still delivered.
        send_reply = ai_result.escalate_reason == AI_UNAVAILABLE_REASON
    else:
        db.refresh(conversation)
        if not conversation.ai_handling:
            job_logger.info("Staff took over during generation, reply not sent")
            send_reply = False

    send_job_id = None
    if send_reply:
        send_job_id = _enqueue_reply(db, payload, conversation, response_message.id, ai_result.response, job_logger)

    return {
        "response_message_id": str(response_message.id),
        "intent": ai_result.intent.value,
        "escalated": ai_result.escalate,
        "score_change": ai_result.score_change,
        "tokens_used": ai_result.tokens_used,
        "used_cached_response": used_cached_response,
        "send_job_id": str(send_job_id) if send_job_id else None,
    }


def _enqueue_reply(
    db: Session,
    payload: dict,
    conversation: Conversation,
    message_id: UUID,
    content: str,
    job_logger: JobLoggerAdapter,
) -> Optional[UUID]:
    connection_id = payload.get("channel_connection_id") or conversation.channel_connection_id
    if not connection_id:
        job_logger.warning("No channel connection for conversation, reply not sent")
        return None

    lead = db.query(Lead).filter(Lead.id == conversation.lead_id).first()
    recipient_id = lead.identifier_for(conversation.channel) if lead else None
    if not recipient_id:
        job_logger.warning("Lead has no identifier for channel, reply not sent", context={"channel": conversation.channel})
        return None

    return enqueue_send_job(
        db,
        channel=conversation.channel,
        tenant_id=conversation.tenant_id,
        conversation_id=conversation.id,
        lead_id=conversation.lead_id,
        message_id=message_id,
        recipient_id=recipient_id,
        content=content,
        channel_connection_id=connection_id,
    )


def handle_send(db: Session, job: dict, job_logger: JobLoggerAdapter) -> dict:
    payload = job.get("payload") or {}
    channel = job["job_type"][len(SEND_JOB_PREFIX):]

    validation = validate_connection_for_job(db, payload.get("channel_connection_id"), expected_channel=channel)
    if not validation.is_valid:
        raise ConnectionInvalidError(validation)
    connection = validation.connection

    decision = check_rate_limit(db, connection.id, channel)
    if not decision.allowed:
        raise RateLimitedError(decision)
    # The window counter is kept even when the send below fails.
    db.commit()

    result = send_text(connection, payload["recipient_id"], payload["content"])
    if not result.ok:
        raise JobProcessingError(f"{result.error_code}: {result.error}", retryable=result.retryable)

    mark_message_sent(db, payload["message_id"], result.value)
    job_logger.info("Message sent", context={"external_id": result.value})
    return {"external_id": result.value, "channel": channel}


def process_job(db: Session, job: dict, *, retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS) -> JobOutcome:
    job_type = job.get("job_type") or ""
    job_logger = JobLoggerAdapter(
        logger,
        {"job_id": str(job["id"]), "job_type": job_type, "attempt": job.get("attempts")},
    )

    try:
        if job_type == AI_RESPONSE_JOB:
            result = handle_ai_response(db, job, job_logger)
        elif is_send_job(job_type):
            result = handle_send(db, job, job_logger)
        else:
            raise JobProcessingError(f"Unknown job type: {job_type}", retryable=False)
        complete_job(db, job["id"], result)
        db.commit()
        job_logger.info("Job completed")
        return JobOutcome(job_id=job["id"], job_type=job_type, status=JobStatus.COMPLETED.value)
    except RateLimitedError as e:
        db.rollback()
        defer_job(db, job["id"], e.decision.retry_after_seconds, str(e))
        db.commit()
        job_logger.info("Job deferred", context={"retry_after_seconds": e.decision.retry_after_seconds})
        return JobOutcome(job_id=job["id"], job_type=job_type, status="deferred", error=str(e))
    except Exception as e:
        db.rollback()
        error = str(e) or type(e).__name__
        job_logger.warning("Job attempt failed", context={"error": error})
        status = fail_job(db, job, error, retry_backoff_seconds=retry_backoff_seconds, retryable=_is_retryable(e))
        if status == JobStatus.FAILED.value and is_send_job(job_type):
            message_id = (job.get("payload") or {}).get("message_id")
            if message_id:
                mark_message_failed(db, message_id, error)
        db.commit()
        return JobOutcome(job_id=job["id"], job_type=job_type, status=status, error=error)


def process_jobs(
    db_factory: Callable[[], Session],
    *,
    max_jobs: int,
    job_types: Optional[list[str]] = None,
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
) -> BatchResult:
    """Claim and run up to ``max_jobs`` due jobs, one session per job."""
    started = time.monotonic()
    batch = BatchResult()

    for _ in range(max_jobs):
        db = db_factory()
        try:
            job = claim_next_job(db, job_types=job_types)
            if not job:
                break
            outcome = process_job(db, job, retry_backoff_seconds=retry_backoff_seconds)
        finally:
            db.close()

        batch.processed += 1
        if outcome.status == JobStatus.COMPLETED.value:
            batch.succeeded += 1
        elif outcome.status == "deferred":
            batch.deferred += 1
        elif outcome.status == JobStatus.PENDING.value:
            batch.retried += 1
            batch.errors.append(f"{outcome.job_id}: {outcome.error}")
        else:
            batch.failed += 1
            batch.errors.append(f"{outcome.job_id}: {outcome.error}")

    batch.duration_ms = int((time.monotonic() - started) * 1000)
    return batch
