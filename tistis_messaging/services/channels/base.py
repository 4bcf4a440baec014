from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

SUPPORTED_CHANNELS = ("whatsapp", "instagram", "facebook", "tiktok")
META_CHANNELS = ("instagram", "facebook")

GRAPH_API_BASE = "https://graph.facebook.com/v18.0"
SEND_TIMEOUT_SECONDS = 30.0


@dataclass
class ParsedInboundMessage:
    channel: str
    sender_id: str  # normalized phone, PSID or TikTok open_id
    external_id: str
    timestamp: datetime
    message_type: str
    content: str
    contact_name: Optional[str] = None
    media_id: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedStatusUpdate:
    external_id: str
    status: str
    timestamp: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class InboundBatch:
    """Messages addressed to one connected account (phone number id, page id or client key)."""

    account_id: str
    messages: list[ParsedInboundMessage] = field(default_factory=list)
    statuses: list[ParsedStatusUpdate] = field(default_factory=list)


def placeholder_for(message_type: str) -> str:
    return f"[Mensaje tipo {message_type}]"


def response_json(response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
