"""WhatsApp Cloud API: inbound payload parsing and outbound text sends."""

import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from tistis_messaging.logging_config import get_logger
from tistis_messaging.services.channels.base import (
    GRAPH_API_BASE,
    SEND_TIMEOUT_SECONDS,
    InboundBatch,
    ParsedInboundMessage,
    ParsedStatusUpdate,
    placeholder_for,
    response_json,
)
from tistis_messaging.services.result import Result

logger = get_logger("channels.whatsapp")

STATUS_MAPPING = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}


def normalize_phone(phone: str) -> str:
    digits = re.sub(r"[^\d+]", "", phone or "")
    if not digits.startswith("+"):
        digits = f"+{digits}"
    return digits


def _from_unix(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _extract_content(message: dict) -> tuple[str, Optional[str], Optional[str]]:
    """Return (content, media_id, media_type) for one WhatsApp message."""
    message_type = message.get("type") or "text"
    body = message.get(message_type) or {}

    if message_type == "text":
        return body.get("body") or "", None, None
    if message_type == "image":
        return body.get("caption") or "[Imagen recibida]", body.get("id"), body.get("mime_type") or "image/jpeg"
    if message_type == "audio":
        return "[Audio recibido]", body.get("id"), body.get("mime_type") or "audio/ogg"
    if message_type == "video":
        return body.get("caption") or "[Video recibido]", body.get("id"), body.get("mime_type") or "video/mp4"
    if message_type == "document":
        return (
            body.get("filename") or "[Documento recibido]",
            body.get("id"),
            body.get("mime_type") or "application/pdf",
        )
    if message_type == "location":
        name = body.get("name")
        if name:
            address = body.get("address")
            suffix = f" - {address}" if address else ""
            return f"[Ubicacion: {name}{suffix}]", None, None
        return f"[Ubicacion: {body.get('latitude')}, {body.get('longitude')}]", None, None
    if message_type == "contacts":
        shared = message.get("contacts") or []
        names = ", ".join((c.get("name") or {}).get("formatted_name", "") for c in shared)
        return (f"[Contactos compartidos: {names}]" if shared else ""), None, None
    if message_type == "interactive":
        reply = body.get("button_reply") or body.get("list_reply") or {}
        return reply.get("title") or "", None, None
    if message_type == "button":
        return body.get("text") or "[Boton presionado]", None, None
    if message_type == "sticker":
        return "[Sticker recibido]", None, None
    return placeholder_for(message_type), None, None


def parse_message(message: dict, contacts: list[dict], metadata: dict) -> ParsedInboundMessage:
    phone = message.get("from") or ""
    contact_name = None
    for contact in contacts:
        if contact.get("wa_id") in (phone, phone.replace("+", "")):
            contact_name = (contact.get("profile") or {}).get("name")
            break

    content, media_id, media_type = _extract_content(message)
    context = message.get("context") or {}
    return ParsedInboundMessage(
        channel="whatsapp",
        sender_id=normalize_phone(phone),
        external_id=message.get("id") or "",
        timestamp=_from_unix(message.get("timestamp")),
        message_type=message.get("type") or "text",
        content=content,
        contact_name=contact_name,
        media_id=media_id,
        media_type=media_type,
        metadata={
            "phone_number_id": metadata.get("phone_number_id"),
            "display_phone_number": metadata.get("display_phone_number"),
            "is_reply": bool(context),
            "reply_to_message_id": context.get("id"),
        },
    )


def parse_status(status: dict) -> ParsedStatusUpdate:
    errors = status.get("errors") or []
    error_message = None
    if errors:
        error_message = errors[0].get("message") or errors[0].get("title")
    return ParsedStatusUpdate(
        external_id=status.get("id") or "",
        status=STATUS_MAPPING.get(status.get("status") or "", "unknown"),
        timestamp=_from_unix(status.get("timestamp")) if status.get("timestamp") else None,
        error_message=error_message,
    )


def extract_batches(payload: dict) -> list[InboundBatch]:
    batches: list[InboundBatch] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            contacts = value.get("contacts") or []
            batch = InboundBatch(account_id=str(metadata.get("phone_number_id") or ""))
            batch.messages = [parse_message(m, contacts, metadata) for m in value.get("messages") or []]
            batch.statuses = [parse_status(s) for s in value.get("statuses") or []]
            batches.append(batch)
    return batches


def send_text(phone_number_id: str, access_token: str, recipient_phone: str, text: str) -> Result[str]:
    """Send a text message and return the WhatsApp message id."""
    if not phone_number_id or not access_token:
        return Result.failure("WhatsApp connection not properly configured", code="not_configured", retryable=False)

    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": recipient_phone.replace("+", ""),
        "type": "text",
        "text": {"preview_url": True, "body": text},
    }
    try:
        with httpx.Client(timeout=SEND_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{GRAPH_API_BASE}/{phone_number_id}/messages",
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )
    except httpx.HTTPError as exc:
        logger.error("WhatsApp send failed", extra={"context": {"error": str(exc)}})
        return Result.failure(str(exc), code="network_error")

    data = response_json(response)
    if response.status_code != 200:
        error = (data.get("error") or {}).get("message") or f"HTTP {response.status_code}"
        logger.error("WhatsApp send error", extra={"context": {"status": response.status_code, "error": error}})
        return Result.failure(error, code="api_error")

    messages = data.get("messages") or [{}]
    return Result.success(messages[0].get("id"))
