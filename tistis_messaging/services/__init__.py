from tistis_messaging.services.conversation_service import (
    TenantContext,
    find_or_create_conversation,
    find_or_create_lead,
    get_tenant_context,
)
from tistis_messaging.services.job_queue_service import (
    cancel_pending_ai_jobs,
    claim_next_job,
    complete_job,
    enqueue_ai_response_job,
    enqueue_send_job,
    fail_job,
)
from tistis_messaging.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    JobStatus,
    can_transition,
    transition,
)
