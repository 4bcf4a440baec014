from tistis_messaging.schemas.conversation import (
    ConversationActionResponse,
    StaffMessageRequest,
    StaffMessageResponse,
    TakeoverRequest,
)
from tistis_messaging.schemas.jobs import (
    DeadLetterRetryResponse,
    ProcessJobsRequest,
    ProcessJobsResponse,
    QueueStatsResponse,
)
from tistis_messaging.schemas.webhook import WebhookAck

__all__ = [
    "ConversationActionResponse",
    "StaffMessageRequest",
    "StaffMessageResponse",
    "TakeoverRequest",
    "DeadLetterRetryResponse",
    "ProcessJobsRequest",
    "ProcessJobsResponse",
    "QueueStatsResponse",
    "WebhookAck",
]
