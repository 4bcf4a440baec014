"""Per channel-connection outbound rate limiting with fixed one-minute windows."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from tistis_messaging.logging_config import get_logger

logger = get_logger("rate_limit_service")

# Messages per minute per connection.
CHANNEL_RATE_LIMITS = {
    "whatsapp": 80,
    "instagram": 30,
    "facebook": 50,
    "tiktok": 10,
}
DEFAULT_RATE_LIMIT = 30


@dataclass
class RateLimitDecision:
    allowed: bool
    current_count: int
    limit: int
    retry_after_seconds: int = 0


class RateLimitedError(Exception):
    def __init__(self, decision: RateLimitDecision):
        self.decision = decision
        super().__init__(
            f"Rate limited. Retry after {decision.retry_after_seconds} seconds. "
            f"Current: {decision.current_count}/{decision.limit}"
        )


def limit_for_channel(channel: str) -> int:
    return CHANNEL_RATE_LIMITS.get(channel, DEFAULT_RATE_LIMIT)


def check_rate_limit(
    db: Session,
    connection_id: UUID,
    channel: str,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    """Count one send against the current minute window.

    The counter is an upsert on (channel_connection_id, window_start), so
    concurrent workers share one row per minute. A rejected send is not
    counted.
    """
    now = now or datetime.now(timezone.utc)
    window_start = now.replace(second=0, microsecond=0)
    limit = limit_for_channel(channel)

    current_count = db.execute(
        text(
            """
            INSERT INTO channel_rate_limits (id, channel_connection_id, channel, window_start, request_count)
            VALUES (gen_random_uuid(), :connection_id, :channel, :window_start, 1)
            ON CONFLICT (channel_connection_id, window_start)
            DO UPDATE SET request_count = channel_rate_limits.request_count + 1
            WHERE channel_rate_limits.request_count < :limit
            RETURNING request_count
            """
        ),
        {"connection_id": connection_id, "channel": channel, "window_start": window_start, "limit": limit},
    ).scalar()

    if current_count is not None:
        return RateLimitDecision(allowed=True, current_count=current_count, limit=limit)

    retry_after = 60 - now.second
    logger.warning(
        "Channel rate limit reached",
        extra={"context": {"connection_id": str(connection_id), "channel": channel, "limit": limit}},
    )
    return RateLimitDecision(allowed=False, current_count=limit, limit=limit, retry_after_seconds=retry_after)


def cleanup_rate_limit_windows(db: Session, older_than_minutes: int = 60) -> int:
    result = db.execute(
        text(
            """
            DELETE FROM channel_rate_limits
            WHERE window_start < NOW() - make_interval(mins => :minutes)
            """
        ),
        {"minutes": older_than_minutes},
    )
    return result.rowcount
