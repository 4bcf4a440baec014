"""Operator alerts delivered to a Telegram chat."""

import os
from typing import Optional

import httpx

from tistis_messaging.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the operators chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict, rendered as a code block

    Returns:
        True if Telegram accepted the message
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning("Alert not configured", extra={"context": {"level": level, "alert": message}})
        return False

    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error("Failed to send alert", extra={"context": {"error": str(e)}})
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_job_failed(job_id, job_type: str, attempts: int, error: str) -> bool:
    """A job exhausted its retries."""
    return alert_error(
        "Job failed permanently",
        {"job_id": str(job_id), "job_type": job_type, "attempts": attempts, "error": error[:300]},
    )


def alert_escalation(conversation_id, tenant_id, reason: str) -> bool:
    return send_alert(
        "INFO",
        "Conversation escalated to a human",
        {"conversation_id": str(conversation_id), "tenant_id": str(tenant_id), "reason": reason},
    )
