"""Webhook signature verification for every inbound channel."""

import hashlib
import hmac
from typing import Optional

from tistis_messaging.config import settings
from tistis_messaging.logging_config import get_logger

logger = get_logger("signature_service")

META_SIGNATURE_HEADER = "X-Hub-Signature-256"
TIKTOK_SIGNATURE_HEADER = "X-TikTok-Signature"
TIKTOK_TIMESTAMP_HEADER = "X-TikTok-Timestamp"


class WebhookSignatureError(Exception):
    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel}: {reason}")


def _constant_time_equals(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_meta_signature(raw_body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Validate ``sha256=<hex>`` HMAC signatures sent by WhatsApp Cloud API and Messenger."""
    if not signature_header:
        logger.warning("Missing signature header", extra={"context": {"header": META_SIGNATURE_HEADER}})
        return False

    prefix, _, provided = signature_header.partition("=")
    if prefix != "sha256" or not provided:
        return False

    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return _constant_time_equals(expected, provided.strip().lower())


def verify_tiktok_signature(
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    client_secret: str,
) -> bool:
    """TikTok signs ``sha256(client_secret + timestamp + body)`` as hex."""
    if not signature or not timestamp:
        logger.warning("Missing TikTok signature or timestamp")
        return False

    digest = hashlib.sha256()
    digest.update(client_secret.encode("utf-8"))
    digest.update(timestamp.encode("utf-8"))
    digest.update(raw_body)
    return _constant_time_equals(digest.hexdigest(), signature.strip().lower())


def _secret_for_channel(channel: str) -> Optional[str]:
    if channel == "whatsapp":
        return settings.whatsapp_app_secret or settings.meta_app_secret
    if channel in ("instagram", "facebook"):
        return settings.meta_app_secret
    if channel == "tiktok":
        return settings.tiktok_client_secret
    return None


def verify_webhook_request(channel: str, raw_body: bytes, headers) -> None:
    """Raise WebhookSignatureError unless the request carries a valid signature.

    Without a configured secret the request is rejected in production and
    accepted with a warning elsewhere.
    """
    secret = _secret_for_channel(channel)
    if not secret:
        if settings.is_production:
            raise WebhookSignatureError(channel, "secret_not_configured")
        logger.warning(
            "Webhook secret not configured, skipping signature check",
            extra={"context": {"channel": channel}},
        )
        return

    if channel == "tiktok":
        valid = verify_tiktok_signature(
            raw_body,
            headers.get(TIKTOK_SIGNATURE_HEADER),
            headers.get(TIKTOK_TIMESTAMP_HEADER),
            secret,
        )
    else:
        valid = verify_meta_signature(raw_body, headers.get(META_SIGNATURE_HEADER), secret)

    if not valid:
        raise WebhookSignatureError(channel, "invalid_signature")


def verify_meta_challenge(mode: Optional[str], token: Optional[str]) -> bool:
    expected = settings.meta_verify_token
    if mode != "subscribe" or not token or not expected:
        return False
    return _constant_time_equals(expected, token)


def verify_cron_authorization(authorization: Optional[str]) -> bool:
    """Check ``Authorization: Bearer <CRON_SECRET>`` for cron-triggered endpoints."""
    secret = settings.cron_secret
    if not secret:
        if settings.is_production:
            logger.error("CRON_SECRET not configured in production")
            return False
        logger.warning("CRON_SECRET not configured, allowing request outside production")
        return True

    if not authorization or not authorization.startswith("Bearer "):
        return False
    return _constant_time_equals(secret, authorization[len("Bearer "):])
