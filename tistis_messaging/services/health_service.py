from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger
from tistis_messaging.models import Conversation, Job
from tistis_messaging.services.dead_letter_service import (
    cleanup_dead_letters,
    get_dead_letter_stats,
    requeue_stuck_dead_letters,
)
from tistis_messaging.services.job_queue_service import get_queue_stats, requeue_stale_jobs
from tistis_messaging.services.rate_limit_service import cleanup_rate_limit_windows
from tistis_messaging.services.state_machine import ConversationStatus, JobStatus

logger = get_logger("health_service")

DEFAULT_STALE_JOB_SECONDS = 300


def check_and_heal_jobs(db: Session, *, stale_after_seconds: float = DEFAULT_STALE_JOB_SECONDS) -> dict:
    """Find inconsistent queue and conversation state and repair it."""
    healed = []

    stale = requeue_stale_jobs(db, stale_after_seconds=stale_after_seconds)
    if stale["requeued"] or stale["failed"]:
        healed.append({"issue": "stale_processing_jobs", "action": "requeued_or_failed", **stale})

    # Escalated conversations must never be answered by the AI.
    escalated_with_ai = (
        db.query(Conversation)
        .filter(
            Conversation.status == ConversationStatus.ESCALATED.value,
            Conversation.ai_handling.is_(True),
        )
        .all()
    )
    for conv in escalated_with_ai:
        conv.ai_handling = False
        healed.append({"conversation_id": str(conv.id), "issue": "escalated_with_ai", "action": "ai_handling_off"})
        logger.warning(f"Healed conversation {conv.id}: escalated with AI handling on")

    stuck_dead_letters = requeue_stuck_dead_letters(db)
    if stuck_dead_letters:
        healed.append({"issue": "stuck_dead_letters", "action": "requeued", "count": stuck_dead_letters})

    windows_removed = cleanup_rate_limit_windows(db)
    db.commit()

    dead_letters_removed = cleanup_dead_letters(db)

    return {
        "healed_count": len(healed),
        "details": healed,
        "rate_limit_windows_removed": windows_removed,
        "dead_letters_removed": dead_letters_removed,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


def get_system_health(db: Session, *, stale_after_seconds: float = DEFAULT_STALE_JOB_SECONDS) -> dict:
    """Overall pipeline state for dashboards and uptime checks."""
    conversation_rows = db.query(Conversation.status, func.count(Conversation.id)).group_by(Conversation.status).all()

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
    stale_jobs = (
        db.query(Job)
        .filter(Job.status == JobStatus.PROCESSING.value, Job.started_at < cutoff)
        .count()
    )

    return {
        "conversations": {status: count for status, count in conversation_rows},
        "job_queue": get_queue_stats(db),
        "stale_jobs": stale_jobs,
        "dead_letters": get_dead_letter_stats(db),
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
