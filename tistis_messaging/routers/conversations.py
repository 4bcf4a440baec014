from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tistis_messaging.database import get_db
from tistis_messaging.schemas.conversation import (
    ConversationActionResponse,
    StaffMessageRequest,
    StaffMessageResponse,
    TakeoverRequest,
)
from tistis_messaging.services.escalation_service import (
    ConversationNotFoundError,
    StaffMessageError,
    release,
    send_staff_message,
    takeover,
)
from tistis_messaging.services.state_machine import InvalidTransitionError

router = APIRouter()


def _action_response(conversation, cancelled_jobs: int = 0) -> ConversationActionResponse:
    return ConversationActionResponse(
        success=True,
        conversation_id=conversation.id,
        status=conversation.status,
        ai_handling=bool(conversation.ai_handling),
        cancelled_jobs=cancelled_jobs,
    )


@router.post("/conversations/{conversation_id}/takeover", response_model=ConversationActionResponse)
def takeover_conversation(
    conversation_id: UUID,
    request: Optional[TakeoverRequest] = None,
    db: Session = Depends(get_db),
):
    """Staff takes over: AI stops and queued AI replies are cancelled."""
    try:
        conversation, cancelled = takeover(db, conversation_id, staff_id=request.staff_id if request else None)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    db.commit()
    return _action_response(conversation, cancelled)


@router.post("/conversations/{conversation_id}/release", response_model=ConversationActionResponse)
def release_conversation(conversation_id: UUID, db: Session = Depends(get_db)):
    try:
        conversation = release(db, conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    db.commit()
    return _action_response(conversation)


@router.post("/conversations/{conversation_id}/messages", response_model=StaffMessageResponse)
def post_staff_message(conversation_id: UUID, request: StaffMessageRequest, db: Session = Depends(get_db)):
    try:
        message, job_id = send_staff_message(db, conversation_id, request.content, staff_id=request.staff_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StaffMessageError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    db.commit()
    return StaffMessageResponse(success=True, message_id=message.id, job_id=job_id)
