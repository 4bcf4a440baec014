from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from tistis_messaging.database import SessionLocal, get_db
from tistis_messaging.logging_config import get_logger
from tistis_messaging.schemas.jobs import (
    DeadLetterActionResponse,
    DeadLetterItem,
    DeadLetterListResponse,
    DeadLetterRetryResponse,
    DismissDeadLetterRequest,
    ProcessJobsRequest,
    ProcessJobsResponse,
    QueueStatsResponse,
)
from tistis_messaging.services.dead_letter_service import (
    get_dead_letter_stats,
    get_pending_dead_letters,
    reschedule_dead_letter,
    resolve_dead_letter,
)
from tistis_messaging.services.inbound_service import replay_dead_letters
from tistis_messaging.services.job_processor import process_jobs
from tistis_messaging.services.job_queue_service import get_queue_stats
from tistis_messaging.services.signature_service import verify_cron_authorization

router = APIRouter()
logger = get_logger("jobs")


def _require_cron_auth(authorization: Optional[str] = Header(default=None)) -> None:
    if not verify_cron_authorization(authorization):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/jobs/process", response_model=ProcessJobsResponse, dependencies=[Depends(_require_cron_auth)])
def process_jobs_endpoint(request: Optional[ProcessJobsRequest] = None):
    request = request or ProcessJobsRequest()
    job_types = [request.job_type] if request.job_type else None
    batch = process_jobs(SessionLocal, max_jobs=request.effective_max_jobs, job_types=job_types)
    logger.info("Cron job batch processed", extra={"context": batch.as_dict()})
    return ProcessJobsResponse(success=True, **batch.as_dict())


@router.get("/jobs/process", response_model=QueueStatsResponse, dependencies=[Depends(_require_cron_auth)])
def queue_status(db: Session = Depends(get_db)):
    return QueueStatsResponse(
        status="healthy",
        queue_stats=get_queue_stats(db),
        timestamp=datetime.now(timezone.utc),
    )


@router.post(
    "/jobs/dead-letters/retry",
    response_model=DeadLetterRetryResponse,
    dependencies=[Depends(_require_cron_auth)],
)
async def retry_dead_letters(limit: int = 10, db: Session = Depends(get_db)):
    summary = await replay_dead_letters(db, limit=min(max(limit, 1), 50))
    return DeadLetterRetryResponse(success=True, **summary)


@router.get(
    "/jobs/dead-letters",
    response_model=DeadLetterListResponse,
    dependencies=[Depends(_require_cron_auth)],
)
def list_dead_letters(limit: int = 50, db: Session = Depends(get_db)):
    dead_letters = get_pending_dead_letters(db, limit=min(max(limit, 1), 200))
    items = [
        DeadLetterItem(
            id=dl.id,
            channel=dl.channel,
            tenant_slug=dl.tenant_slug,
            error_message=dl.error_message,
            retry_count=dl.retry_count or 0,
            max_retries=dl.max_retries or 0,
            status=dl.status,
            next_retry_at=dl.next_retry_at,
            created_at=dl.created_at,
        )
        for dl in dead_letters
    ]
    return DeadLetterListResponse(items=items, stats=get_dead_letter_stats(db))


@router.post(
    "/jobs/dead-letters/{dead_letter_id}/dismiss",
    response_model=DeadLetterActionResponse,
    dependencies=[Depends(_require_cron_auth)],
)
def dismiss_dead_letter(
    dead_letter_id: UUID,
    request: Optional[DismissDeadLetterRequest] = None,
    db: Session = Depends(get_db),
):
    notes = request.notes if request else None
    if not resolve_dead_letter(db, dead_letter_id, notes=notes, status="dismissed"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    db.commit()
    logger.info("Dead letter dismissed", extra={"context": {"dead_letter_id": str(dead_letter_id)}})
    return DeadLetterActionResponse(success=True, dead_letter_id=dead_letter_id, status="dismissed")


@router.post(
    "/jobs/dead-letters/{dead_letter_id}/reschedule",
    response_model=DeadLetterActionResponse,
    dependencies=[Depends(_require_cron_auth)],
)
def reschedule_dead_letter_endpoint(dead_letter_id: UUID, db: Session = Depends(get_db)):
    if not reschedule_dead_letter(db, dead_letter_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    db.commit()
    logger.info("Dead letter rescheduled", extra={"context": {"dead_letter_id": str(dead_letter_id)}})
    return DeadLetterActionResponse(success=True, dead_letter_id=dead_letter_id, status="pending")
