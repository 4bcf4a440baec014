"""Instagram Direct and Facebook Messenger (Meta messaging platform)."""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from tistis_messaging.logging_config import get_logger
from tistis_messaging.services.channels.base import (
    GRAPH_API_BASE,
    SEND_TIMEOUT_SECONDS,
    InboundBatch,
    ParsedInboundMessage,
    placeholder_for,
    response_json,
)
from tistis_messaging.services.result import Result

logger = get_logger("channels.meta")

MEDIA_PLACEHOLDERS = {
    "image": "[Imagen recibida]",
    "video": "[Video recibido]",
    "audio": "[Audio recibido]",
}


def _from_millis(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _parse_attachment(attachment: dict, message: dict) -> dict:
    kind = attachment.get("type") or "unsupported"
    payload = attachment.get("payload") or {}
    parsed: dict[str, Any] = {"type": kind, "content": "", "media_url": None, "media_type": None}

    if kind in MEDIA_PLACEHOLDERS:
        parsed.update(content=MEDIA_PLACEHOLDERS[kind], media_url=payload.get("url"), media_type=kind)
    elif kind == "file":
        parsed.update(content=payload.get("title") or "[Archivo recibido]", media_url=payload.get("url"), media_type="file")
    elif kind == "location":
        coordinates = payload.get("coordinates")
        if coordinates:
            parsed["content"] = f"[Ubicacion: {coordinates.get('lat')}, {coordinates.get('long')}]"
        else:
            parsed["content"] = "[Ubicacion compartida]"
    elif kind == "story_mention":
        parsed.update(content="[Te mencionaron en una historia]", story_url=payload.get("story_url"))
    elif kind == "story_reply":
        parsed.update(content=message.get("text") or "[Respuesta a historia]", story_url=payload.get("story_url"))
    else:
        parsed.update(type="unsupported", content=placeholder_for(kind))
    return parsed


def parse_event(channel: str, event: dict, page_id: str) -> Optional[ParsedInboundMessage]:
    """Parse one ``messaging`` event. Echoes, deletions and empty events return None."""
    message = event.get("message")
    if message and (message.get("is_echo") or message.get("is_deleted") or message.get("is_unsupported")):
        return None

    message_type = "text"
    content = ""
    media_url = None
    media_type = None
    story_url = None

    if event.get("postback"):
        postback = event["postback"]
        message_type = "postback"
        content = postback.get("title") or postback.get("payload") or ""
    elif event.get("reaction"):
        reaction = event["reaction"]
        message_type = "reaction"
        content = reaction.get("emoji") or reaction.get("reaction") or "[Reaccion]"
    elif message:
        if message.get("quick_reply"):
            message_type = "quick_reply"
            content = message.get("text") or message["quick_reply"].get("payload") or ""
        elif message.get("text"):
            content = message["text"]
        elif message.get("attachments"):
            parsed = _parse_attachment(message["attachments"][0], message)
            message_type = parsed["type"]
            content = parsed["content"]
            media_url = parsed["media_url"]
            media_type = parsed["media_type"]
            story_url = parsed.get("story_url")

    if not content:
        return None

    message = message or {}
    reply_to = message.get("reply_to") or {}
    sender_id = str((event.get("sender") or {}).get("id") or "")
    # postbacks and reactions carry no mid
    external_id = message.get("mid") or f"{message_type}_{page_id}_{sender_id}_{event.get('timestamp')}"
    return ParsedInboundMessage(
        channel=channel,
        sender_id=sender_id,
        external_id=external_id,
        timestamp=_from_millis(event.get("timestamp")),
        message_type=message_type,
        content=content,
        media_url=media_url,
        media_type=media_type,
        metadata={
            "page_id": page_id,
            "recipient_id": (event.get("recipient") or {}).get("id"),
            "is_reply": bool(reply_to),
            "reply_to_message_id": reply_to.get("mid"),
            "is_story_reply": message_type == "story_reply",
            "is_story_mention": message_type == "story_mention",
            "story_url": story_url,
        },
    )


def extract_batches(channel: str, payload: dict) -> list[InboundBatch]:
    batches: list[InboundBatch] = []
    for entry in payload.get("entry") or []:
        events = entry.get("messaging") or []
        if not events:
            continue
        page_id = str(entry.get("id") or "")
        batch = InboundBatch(account_id=page_id)
        for event in events:
            parsed = parse_event(channel, event, page_id)
            if parsed:
                batch.messages.append(parsed)
        batches.append(batch)
    return batches


def send_text(channel: str, access_token: str, recipient_psid: str, text: str) -> Result[str]:
    """Send through ``me/messages``; the page is implied by the access token."""
    if not access_token:
        return Result.failure(f"{channel} access token not configured", code="not_configured", retryable=False)

    payload = {
        "recipient": {"id": recipient_psid},
        "messaging_type": "RESPONSE",
        "message": {"text": text},
    }
    try:
        with httpx.Client(timeout=SEND_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{GRAPH_API_BASE}/me/messages",
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.error("Meta send failed", extra={"context": {"channel": channel, "error": str(exc)}})
        return Result.failure(str(exc), code="network_error")

    data = response_json(response)
    if data.get("error") or response.status_code != 200:
        error = (data.get("error") or {}).get("message") or "Failed to send message"
        logger.error("Meta send error", extra={"context": {"channel": channel, "error": error}})
        return Result.failure(error, code="api_error")

    return Result.success(data.get("message_id"))
