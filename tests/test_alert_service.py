from unittest.mock import MagicMock, Mock, patch

from tistis_messaging.services.alert_service import (
    alert_escalation,
    alert_job_failed,
    send_alert,
)


class TestSendAlert:
    @patch("tistis_messaging.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("tistis_messaging.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch("tistis_messaging.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("tistis_messaging.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("tistis_messaging.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Test error message", {"job_id": "123"})

        assert result is True
        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "job_id: 123" in json_data["text"]

    @patch("tistis_messaging.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("tistis_messaging.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("tistis_messaging.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = Exception("Network error")

        assert send_alert("ERROR", "Test message") is False


class TestAlertHelpers:
    @patch("tistis_messaging.services.alert_service.send_alert")
    def test_job_failed_truncates_error(self, mock_send):
        alert_job_failed("job-1", "ai_response", 3, "x" * 1000)

        level, message, context = mock_send.call_args[0]
        assert level == "ERROR"
        assert context["job_type"] == "ai_response"
        assert context["attempts"] == 3
        assert len(context["error"]) == 300

    @patch("tistis_messaging.services.alert_service.send_alert")
    def test_escalation(self, mock_send):
        alert_escalation("conv-1", "tenant-1", "Cliente solicita hablar con humano")

        level, _, context = mock_send.call_args[0]
        assert level == "INFO"
        assert context["conversation_id"] == "conv-1"
