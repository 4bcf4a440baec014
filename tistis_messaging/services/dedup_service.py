"""Fast-path duplicate detection for inbound webhook messages.

Redis only short-circuits repeated deliveries. The UNIQUE (channel, external_id)
constraint on messages stays authoritative, so a Redis outage degrades to the
database check instead of failing the webhook.
"""

import os
from typing import Optional

import redis.asyncio as redis_async

from tistis_messaging.config import settings
from tistis_messaging.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_KEY_PREFIX = "tistis:dedup"

_dedup_redis_client = None
_dedup_redis_url = None


def _get_socket_timeout_seconds() -> float:
    return float(os.environ.get("DEDUP_SOCKET_TIMEOUT_SECONDS", "0.3"))


def get_dedup_redis():
    global _dedup_redis_client, _dedup_redis_url

    redis_url = settings.redis_url
    if not redis_url:
        return None

    if _dedup_redis_client is None or _dedup_redis_url != redis_url:
        socket_timeout_seconds = _get_socket_timeout_seconds()
        _dedup_redis_url = redis_url
        _dedup_redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )

    return _dedup_redis_client


def dedup_key(channel: str, external_id: str) -> str:
    return f"{DEDUP_KEY_PREFIX}:{channel}:{external_id}"


async def is_duplicate_external_id(channel: str, external_id: Optional[str], redis_client=None) -> bool:
    """True when this (channel, external_id) was already seen within the TTL."""
    if not external_id:
        return False

    redis_client = redis_client or get_dedup_redis()
    if not redis_client:
        return False

    try:
        was_set = await redis_client.set(
            dedup_key(channel, external_id), "1", ex=settings.dedup_ttl_seconds, nx=True
        )
    except Exception as e:
        logger.warning(
            "Dedup redis unavailable, falling back to DB",
            extra={"context": {"channel": channel, "external_id": external_id, "error": str(e)}},
        )
        return False

    if not was_set:
        logger.info(
            "Duplicate message (redis)",
            extra={"context": {"channel": channel, "external_id": external_id}},
        )
        return True
    return False


async def release_external_id(channel: str, external_id: Optional[str], redis_client=None) -> None:
    """Forget a key whose message failed to persist, so a replay is not mistaken for a duplicate."""
    if not external_id:
        return

    redis_client = redis_client or get_dedup_redis()
    if not redis_client:
        return

    try:
        await redis_client.delete(dedup_key(channel, external_id))
    except Exception as e:
        logger.warning(
            "Dedup key release failed",
            extra={"context": {"channel": channel, "external_id": external_id, "error": str(e)}},
        )
