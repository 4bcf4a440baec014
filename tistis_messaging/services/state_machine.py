from enum import Enum
from typing import Union


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ARCHIVED = "archived"


JOB_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.PROCESSING, JobStatus.CANCELLED],
    # processing -> pending is a scheduled retry or a rate-limit deferral
    JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING, JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [],
    JobStatus.CANCELLED: [],
}

CONVERSATION_TRANSITIONS = {
    ConversationStatus.ACTIVE: [
        ConversationStatus.PENDING,
        ConversationStatus.ESCALATED,
        ConversationStatus.RESOLVED,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.PENDING: [
        ConversationStatus.ACTIVE,
        ConversationStatus.ESCALATED,
        ConversationStatus.RESOLVED,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.ESCALATED: [
        ConversationStatus.ACTIVE,
        ConversationStatus.RESOLVED,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.RESOLVED: [ConversationStatus.ACTIVE, ConversationStatus.ARCHIVED],
    ConversationStatus.CLOSED: [ConversationStatus.ACTIVE, ConversationStatus.ARCHIVED],
    ConversationStatus.ARCHIVED: [ConversationStatus.ACTIVE],
}

# Conversations in these states are reused for new inbound messages.
OPEN_CONVERSATION_STATUSES = {ConversationStatus.ACTIVE, ConversationStatus.PENDING}
# Conversations in these states are reopened instead of replaced.
REOPENABLE_CONVERSATION_STATUSES = {
    ConversationStatus.RESOLVED,
    ConversationStatus.CLOSED,
    ConversationStatus.ARCHIVED,
}

State = Union[JobStatus, ConversationStatus]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: State, to_state: State):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _transitions_for(state: State) -> dict:
    if isinstance(state, JobStatus):
        return JOB_TRANSITIONS
    return CONVERSATION_TRANSITIONS


def can_transition(from_state: State, to_state: State) -> bool:
    """Check if transition is valid."""
    if type(from_state) is not type(to_state):
        return False
    allowed = _transitions_for(from_state).get(from_state, [])
    return to_state in allowed


def transition(from_state: State, to_state: State) -> State:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state
