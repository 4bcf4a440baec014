from tistis_messaging.services.channels import meta, tiktok, whatsapp
from tistis_messaging.services.channels.base import (
    META_CHANNELS,
    SUPPORTED_CHANNELS,
    InboundBatch,
    ParsedInboundMessage,
    ParsedStatusUpdate,
)
from tistis_messaging.services.result import Result


def extract_batches(channel: str, payload: dict) -> list[InboundBatch]:
    if channel == "whatsapp":
        return whatsapp.extract_batches(payload)
    if channel in META_CHANNELS:
        return meta.extract_batches(channel, payload)
    if channel == "tiktok":
        return tiktok.extract_batches(payload)
    raise ValueError(f"Unsupported channel: {channel}")


def send_text(connection, recipient_id: str, text: str) -> Result[str]:
    """Send ``text`` through the API of ``connection.channel``."""
    channel = connection.channel
    if channel == "whatsapp":
        return whatsapp.send_text(
            connection.whatsapp_phone_number_id, connection.whatsapp_access_token, recipient_id, text
        )
    if channel in META_CHANNELS:
        return meta.send_text(channel, connection.access_token(), recipient_id, text)
    if channel == "tiktok":
        return tiktok.send_text(connection.tiktok_access_token, recipient_id, text)
    return Result.failure(f"Unsupported channel: {channel}", code="unsupported_channel", retryable=False)


__all__ = [
    "SUPPORTED_CHANNELS",
    "META_CHANNELS",
    "InboundBatch",
    "ParsedInboundMessage",
    "ParsedStatusUpdate",
    "extract_batches",
    "send_text",
]
