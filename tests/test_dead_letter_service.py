from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest

from tistis_messaging.models import WebhookDeadLetter
from tistis_messaging.services.dead_letter_service import (
    claim_due_dead_letters,
    enqueue_dead_letter,
    get_dead_letter_stats,
    get_pending_dead_letters,
    mark_for_retry,
    next_retry_delay,
    requeue_stuck_dead_letters,
    reschedule_dead_letter,
    resolve_dead_letter,
    sanitize_headers,
)


class TestSanitizeHeaders:
    def test_strips_signatures_and_auth(self):
        headers = {
            "Content-Type": "application/json",
            "X-Hub-Signature-256": "sha256=abc",
            "authorization": "Bearer x",
        }
        assert sanitize_headers(headers) == {"Content-Type": "application/json"}

    def test_none(self):
        assert sanitize_headers(None) == {}


class TestEnqueueDeadLetter:
    def test_creates_pending_row(self, db_session):
        dead_letter = enqueue_dead_letter(
            db_session,
            channel="whatsapp",
            tenant_slug="clinica-sol",
            payload={"entry": []},
            error_message="Tenant not found",
            headers={"X-Hub-Signature-256": "sha256=abc", "User-Agent": "facebookexternalua"},
        )

        assert dead_letter.status == "pending"
        assert dead_letter.retry_count == 0
        assert dead_letter.max_retries == 3
        assert dead_letter.headers == {"User-Agent": "facebookexternalua"}
        assert dead_letter.next_retry_at > datetime.now(timezone.utc)
        db_session.add.assert_called_once_with(dead_letter)


class TestRetrySchedule:
    def test_delays(self):
        assert next_retry_delay(0) == timedelta(minutes=5)
        assert next_retry_delay(1) == timedelta(minutes=30)
        assert next_retry_delay(2) == timedelta(hours=3)

    @patch("tistis_messaging.services.dead_letter_service.alert_warning")
    def test_full_schedule(self, mock_alert, db_session):
        dead_letter = enqueue_dead_letter(
            db_session, channel="whatsapp", tenant_slug="clinica-sol", payload={}, error_message="db down"
        )
        db_session.query.return_value.filter.return_value.first.return_value = dead_letter
        waits = [dead_letter.next_retry_at - dead_letter.created_at]

        statuses = []
        for _ in range(3):
            statuses.append(mark_for_retry(db_session, dead_letter.id, "db down"))
            if dead_letter.next_retry_at is not None:
                waits.append(dead_letter.next_retry_at - dead_letter.updated_at)

        assert statuses == ["pending", "pending", "failed"]
        assert waits == [timedelta(minutes=5), timedelta(minutes=30), timedelta(hours=3)]
        assert dead_letter.retry_count == 3
        mock_alert.assert_called_once()

    def test_mark_for_retry_reschedules(self, db_session):
        dead_letter = WebhookDeadLetter(id=uuid4(), retry_count=0, max_retries=3, status="processing")
        db_session.query.return_value.filter.return_value.first.return_value = dead_letter

        status = mark_for_retry(db_session, dead_letter.id, "db timeout")

        assert status == "pending"
        assert dead_letter.retry_count == 1
        assert dead_letter.error_message == "db timeout"
        assert dead_letter.next_retry_at > datetime.now(timezone.utc) + timedelta(minutes=29)

    @patch("tistis_messaging.services.dead_letter_service.alert_warning")
    def test_mark_for_retry_exhausted(self, mock_alert, db_session):
        dead_letter = WebhookDeadLetter(id=uuid4(), retry_count=2, max_retries=3, status="processing")
        db_session.query.return_value.filter.return_value.first.return_value = dead_letter

        status = mark_for_retry(db_session, dead_letter.id, "still broken")

        assert status == "failed"
        assert dead_letter.next_retry_at is None
        mock_alert.assert_called_once()

    def test_mark_for_retry_missing_row(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert mark_for_retry(db_session, uuid4(), "x") is None


class TestClaim:
    def test_claim_due(self, db_session):
        row = {"id": uuid4(), "channel": "tiktok", "tenant_slug": "t", "payload": {}, "retry_count": 0, "max_retries": 3}
        db_session.execute.return_value.mappings.return_value.all.return_value = [row]

        claimed = claim_due_dead_letters(db_session, limit=5)

        assert claimed == [row]
        sql = str(db_session.execute.call_args[0][0])
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert db_session.execute.call_args[0][1] == {"limit": 5}
        db_session.commit.assert_called_once()

    def test_pending_ordered_by_next_retry(self, db_session):
        rows = [WebhookDeadLetter(id=uuid4(), status="pending")]
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.return_value.all.return_value = rows

        assert get_pending_dead_letters(db_session, limit=20) == rows
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.assert_called_once_with(20)


class TestResolution:
    def test_resolve(self, db_session):
        dead_letter = WebhookDeadLetter(id=uuid4(), status="processing", next_retry_at=datetime.now(timezone.utc))
        db_session.query.return_value.filter.return_value.first.return_value = dead_letter

        assert resolve_dead_letter(db_session, dead_letter.id, notes="replayed") is True
        assert dead_letter.status == "completed"
        assert dead_letter.resolution_notes == "replayed"
        assert dead_letter.resolved_at is not None
        assert dead_letter.next_retry_at is None

    def test_resolve_rejects_unknown_status(self, db_session):
        with pytest.raises(ValueError):
            resolve_dead_letter(db_session, uuid4(), status="pending")

    def test_reschedule_resets_retry_count(self, db_session):
        dead_letter = WebhookDeadLetter(id=uuid4(), status="failed", retry_count=3)
        db_session.query.return_value.filter.return_value.first.return_value = dead_letter

        assert reschedule_dead_letter(db_session, dead_letter.id) is True
        assert dead_letter.status == "pending"
        assert dead_letter.retry_count == 0
        assert dead_letter.next_retry_at is not None

    def test_requeue_stuck(self, db_session):
        db_session.execute.return_value.rowcount = 1
        assert requeue_stuck_dead_letters(db_session, stuck_after_minutes=10) == 1
        assert db_session.execute.call_args[0][1] == {"minutes": 10}


class TestStats:
    def test_stats(self, db_session):
        db_session.execute.return_value.mappings.return_value.all.return_value = [
            {"channel": "whatsapp", "status": "pending", "count": 2},
            {"channel": "tiktok", "status": "failed", "count": 1},
        ]

        stats = get_dead_letter_stats(db_session)

        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_channel"] == {"whatsapp": 2, "tiktok": 1}
        assert stats["total"] == 3
