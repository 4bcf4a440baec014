from tistis_messaging.models.ai_usage_log import AIUsageLog
from tistis_messaging.models.channel_connection import ChannelConnection
from tistis_messaging.models.channel_rate_limit import ChannelRateLimit
from tistis_messaging.models.conversation import Conversation
from tistis_messaging.models.job import Job
from tistis_messaging.models.lead import LEAD_IDENTIFIER_COLUMNS, Lead
from tistis_messaging.models.lead_score_history import LeadScoreHistory
from tistis_messaging.models.message import Message
from tistis_messaging.models.tenant import Tenant
from tistis_messaging.models.webhook_dead_letter import WebhookDeadLetter

__all__ = [
    "Tenant",
    "ChannelConnection",
    "Lead",
    "LEAD_IDENTIFIER_COLUMNS",
    "LeadScoreHistory",
    "Conversation",
    "Message",
    "Job",
    "WebhookDeadLetter",
    "ChannelRateLimit",
    "AIUsageLog",
]
