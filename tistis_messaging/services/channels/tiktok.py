"""TikTok direct messages.

TikTok caps outbound messages at 10 per user per day and only allows
replies inside a 24 hour window after the user's last message.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from tistis_messaging.logging_config import get_logger
from tistis_messaging.services.channels.base import (
    SEND_TIMEOUT_SECONDS,
    InboundBatch,
    ParsedInboundMessage,
    placeholder_for,
    response_json,
)
from tistis_messaging.services.result import Result

logger = get_logger("channels.tiktok")

TIKTOK_API_BASE = "https://open.tiktokapis.com/v2"
RECEIVE_EVENT = "direct_message.receive"

ERROR_DAILY_LIMIT = 10003
ERROR_WINDOW_EXPIRED = 10004


def _from_unix(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def parse_payload(payload: dict) -> Optional[ParsedInboundMessage]:
    if payload.get("event") != RECEIVE_EVENT:
        return None

    content = payload.get("content") or {}
    open_id = content.get("open_id")
    message_id = content.get("message_id")
    if not open_id or not message_id:
        return None

    body = content.get("message_content") or {}
    message_type = content.get("message_type") or "text"
    media_url = None
    media_type = None
    metadata: dict[str, Any] = {"client_key": payload.get("client_key"), "is_shared_video": False}

    if message_type == "text":
        text = body.get("text") or ""
    elif message_type in ("image", "video"):
        text = "[Imagen recibida]" if message_type == "image" else "[Video recibido]"
        media_url = body.get("media_url")
        media_type = message_type
    elif message_type == "sticker":
        text = "[Sticker recibido]"
    elif message_type == "share":
        text = "[Video de TikTok compartido]"
        media_url = body.get("shared_video_url")
        metadata.update(is_shared_video=True, shared_video_id=body.get("shared_video_id"))
    else:
        text = placeholder_for(message_type)

    return ParsedInboundMessage(
        channel="tiktok",
        sender_id=open_id,
        external_id=message_id,
        timestamp=_from_unix(payload.get("create_time")),
        message_type=message_type,
        content=text,
        media_url=media_url,
        media_type=media_type,
        metadata=metadata,
    )


def extract_batches(payload: dict) -> list[InboundBatch]:
    batch = InboundBatch(account_id=str(payload.get("client_key") or ""))
    parsed = parse_payload(payload)
    if parsed:
        batch.messages.append(parsed)
    return [batch]


def send_text(access_token: str, recipient_open_id: str, text: str) -> Result[str]:
    if not access_token:
        return Result.failure("TikTok access token not configured", code="not_configured", retryable=False)

    payload = {
        "open_id": recipient_open_id,
        "message_type": "text",
        "message_content": {"text": text},
    }
    try:
        with httpx.Client(timeout=SEND_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{TIKTOK_API_BASE}/direct_message/send/",
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.error("TikTok send failed", extra={"context": {"error": str(exc)}})
        return Result.failure("Network error", code="network_error")

    data = response_json(response)
    error = data.get("error") or {}
    code = error.get("code")
    if code == 0:
        return Result.success((data.get("data") or {}).get("message_id"))

    logger.error("TikTok send error", extra={"context": {"code": code, "error": error.get("message")}})
    if code == ERROR_DAILY_LIMIT:
        return Result.failure(
            "Rate limit exceeded - max 10 messages per user per day", code="daily_limit", retryable=False
        )
    if code == ERROR_WINDOW_EXPIRED:
        return Result.failure("24-hour messaging window expired", code="window_expired", retryable=False)
    return Result.failure(error.get("message") or f"HTTP {response.status_code}", code="api_error")
