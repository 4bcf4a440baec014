from unittest.mock import patch
from uuid import uuid4

import pytest

from tistis_messaging.models import Conversation, Lead, Message
from tistis_messaging.services.escalation_service import (
    ConversationNotFoundError,
    StaffMessageError,
    escalate_conversation,
    get_conversation,
    release,
    send_staff_message,
    takeover,
)
from tistis_messaging.services.state_machine import InvalidTransitionError


def _conversation(**overrides):
    values = dict(
        id=uuid4(),
        tenant_id=uuid4(),
        lead_id=uuid4(),
        channel="whatsapp",
        channel_connection_id=uuid4(),
        status="active",
        ai_handling=True,
    )
    values.update(overrides)
    return Conversation(**values)


class TestGetConversation:
    def test_not_found(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        with pytest.raises(ConversationNotFoundError):
            get_conversation(db_session, uuid4())


class TestEscalateConversation:
    @patch("tistis_messaging.services.escalation_service.alert_escalation")
    @patch("tistis_messaging.services.escalation_service.cancel_pending_ai_jobs", return_value=1)
    def test_escalates_and_cancels_jobs(self, mock_cancel, mock_alert, db_session):
        conversation = _conversation()

        cancelled = escalate_conversation(db_session, conversation, "Cliente solicitó hablar con un humano")

        assert cancelled == 1
        assert conversation.status == "escalated"
        assert conversation.ai_handling is False
        assert conversation.escalation_reason == "Cliente solicitó hablar con un humano"
        assert conversation.escalated_at is not None
        mock_cancel.assert_called_once_with(db_session, conversation.id, reason="escalated")
        mock_alert.assert_called_once()

    @patch("tistis_messaging.services.escalation_service.alert_escalation")
    @patch("tistis_messaging.services.escalation_service.cancel_pending_ai_jobs", return_value=0)
    def test_already_escalated_updates_reason(self, mock_cancel, mock_alert, db_session):
        conversation = _conversation(status="escalated", ai_handling=False, escalation_reason="old")

        escalate_conversation(db_session, conversation, "new")

        assert conversation.status == "escalated"
        assert conversation.escalation_reason == "new"

    @patch("tistis_messaging.services.escalation_service.alert_escalation")
    @patch("tistis_messaging.services.escalation_service.cancel_pending_ai_jobs")
    def test_closed_conversation_rejected(self, mock_cancel, mock_alert, db_session):
        conversation = _conversation(status="closed")

        with pytest.raises(InvalidTransitionError):
            escalate_conversation(db_session, conversation, "reason")

        mock_cancel.assert_not_called()


class TestTakeoverAndRelease:
    @patch("tistis_messaging.services.escalation_service.cancel_pending_ai_jobs", return_value=2)
    def test_takeover(self, mock_cancel, db_session):
        conversation = _conversation()
        db_session.query.return_value.filter.return_value.first.return_value = conversation

        result, cancelled = takeover(db_session, conversation.id, staff_id="staff-1")

        assert result is conversation
        assert cancelled == 2
        assert conversation.ai_handling is False
        mock_cancel.assert_called_once_with(db_session, conversation.id, reason="human_takeover")

    def test_release_escalated(self, db_session):
        conversation = _conversation(status="escalated", ai_handling=False, escalation_reason="dolor")
        db_session.query.return_value.filter.return_value.first.return_value = conversation

        release(db_session, conversation.id)

        assert conversation.status == "active"
        assert conversation.ai_handling is True
        assert conversation.escalation_reason is None

    def test_release_active_only_toggles_ai(self, db_session):
        conversation = _conversation(ai_handling=False)
        db_session.query.return_value.filter.return_value.first.return_value = conversation

        release(db_session, conversation.id)

        assert conversation.status == "active"
        assert conversation.ai_handling is True


class TestSendStaffMessage:
    @patch("tistis_messaging.services.escalation_service.enqueue_send_job")
    @patch("tistis_messaging.services.escalation_service.save_outbound_message")
    @patch("tistis_messaging.services.escalation_service.cancel_pending_ai_jobs")
    def test_queues_delivery(self, mock_cancel, mock_save, mock_enqueue, db_session):
        conversation = _conversation()
        lead = Lead(id=conversation.lead_id, phone_normalized="+5215512345678")
        db_session.query.return_value.filter.return_value.first.side_effect = [conversation, lead]
        message = Message(id=uuid4())
        mock_save.return_value = message
        job_id = uuid4()
        mock_enqueue.return_value = job_id

        result_message, result_job = send_staff_message(db_session, conversation.id, "Le atiende Laura", "staff-1")

        assert result_message is message
        assert result_job == job_id
        assert conversation.ai_handling is False
        mock_cancel.assert_called_once()
        assert mock_save.call_args[1]["sender_type"] == "staff"
        assert mock_save.call_args[1]["message_metadata"] == {"staff_id": "staff-1"}
        enqueue_kwargs = mock_enqueue.call_args[1]
        assert enqueue_kwargs["recipient_id"] == "+5215512345678"
        assert enqueue_kwargs["channel"] == "whatsapp"
        assert enqueue_kwargs["message_id"] == message.id

    def test_missing_connection(self, db_session):
        conversation = _conversation(channel_connection_id=None)
        db_session.query.return_value.filter.return_value.first.return_value = conversation

        with pytest.raises(StaffMessageError):
            send_staff_message(db_session, conversation.id, "Hola")

    def test_lead_without_identifier(self, db_session):
        conversation = _conversation(channel="tiktok")
        lead = Lead(id=conversation.lead_id, phone_normalized="+521")
        db_session.query.return_value.filter.return_value.first.side_effect = [conversation, lead]

        with pytest.raises(StaffMessageError):
            send_staff_message(db_session, conversation.id, "Hola")
