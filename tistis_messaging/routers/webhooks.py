import json

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from tistis_messaging.logging_config import get_logger
from tistis_messaging.schemas.webhook import WebhookAck
from tistis_messaging.services.channels import META_CHANNELS, SUPPORTED_CHANNELS
from tistis_messaging.services.inbound_service import handle_webhook_in_background
from tistis_messaging.services.signature_service import (
    WebhookSignatureError,
    verify_meta_challenge,
    verify_webhook_request,
)

router = APIRouter()
logger = get_logger("webhooks")

VERIFIABLE_CHANNELS = ("whatsapp",) + META_CHANNELS


def _require_channel(channel: str, allowed=SUPPORTED_CHANNELS) -> None:
    if channel not in allowed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unsupported channel '{channel}'")


@router.get("/webhooks/{channel}/{tenant_slug}", response_class=PlainTextResponse)
async def verify_webhook(
    channel: str,
    tenant_slug: str,
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo ``hub.challenge`` when the verify token matches."""
    _require_channel(channel, VERIFIABLE_CHANNELS)
    if not verify_meta_challenge(hub_mode, hub_verify_token):
        logger.warning(
            "Webhook verification rejected",
            extra={"context": {"channel": channel, "tenant_slug": tenant_slug, "mode": hub_mode}},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(hub_challenge or "")


@router.post("/webhooks/{channel}/{tenant_slug}", response_model=WebhookAck)
async def receive_webhook(channel: str, tenant_slug: str, request: Request, background_tasks: BackgroundTasks):
    """Verify, acknowledge at once, and process the payload after the response is sent."""
    _require_channel(channel)
    raw_body = await request.body()

    try:
        verify_webhook_request(channel, raw_body, request.headers)
    except WebhookSignatureError as exc:
        logger.warning(
            "Webhook signature rejected",
            extra={"context": {"channel": channel, "tenant_slug": tenant_slug, "reason": exc.reason}},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    background_tasks.add_task(
        handle_webhook_in_background,
        channel,
        tenant_slug,
        payload,
        dict(request.headers),
    )
    return WebhookAck(received=True)
