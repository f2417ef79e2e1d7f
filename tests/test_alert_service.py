from unittest.mock import MagicMock, Mock, patch

import httpx

from app.services.alert_service import (
    alert_error,
    alert_escalation,
    alert_warning,
    format_alert,
    send_alert,
)


def telegram_ok(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_client.post.return_value = mock_response
    return mock_client


class TestFormatAlert:
    def test_level_mark_and_message(self):
        text = format_alert("ERROR", "Player creation failed")
        assert text.startswith("❌ *ERROR*")
        assert "Player creation failed" in text

    def test_unknown_level_gets_default_mark(self):
        assert format_alert("NOTICE", "x").startswith("📢")

    def test_secret_keys_redacted(self):
        text = format_alert("ERROR", "Boom", {"lead_id": 7, "access_token": "abc", "password": "hunter2"})
        assert "lead_id: 7" in text
        assert "abc" not in text
        assert "hunter2" not in text
        assert "access_token: ***" in text

    def test_none_values_skipped(self):
        text = format_alert("WARNING", "x", {"lead_id": None})
        assert "```" not in text


class TestSendAlert:
    @patch("app.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("app.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = telegram_ok(mock_client_class)

        result = send_alert("ERROR", "Test error message", {"client": "alpha", "lead_id": 501})

        assert result is True
        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://api.telegram.org/bottest-token/sendMessage"
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "lead_id: 501" in json_data["text"]

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        telegram_ok(mock_client_class, status_code=400)
        assert send_alert("ERROR", "Test message") is False

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_network_error(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = httpx.ConnectError("Network error")
        assert send_alert("ERROR", "Test message") is False


class TestAlertShortcuts:
    @patch("app.services.alert_service.send_alert")
    def test_alert_error_calls_send_alert_with_error_level(self, mock_send):
        mock_send.return_value = True

        result = alert_error("Test error", {"key": "value"})

        mock_send.assert_called_once_with("ERROR", "Test error", {"key": "value"})
        assert result is True

    @patch("app.services.alert_service.send_alert")
    def test_alert_warning_calls_send_alert_with_warning_level(self, mock_send):
        mock_send.return_value = True

        alert_warning("Warning message")

        mock_send.assert_called_once_with("WARNING", "Warning message", None)

    @patch("app.services.alert_service.send_alert")
    def test_alert_escalation(self, mock_send):
        alert_escalation("alpha", 501, 3)

        level, message, context = mock_send.call_args[0]
        assert level == "WARNING"
        assert "escalated" in message
        assert context == {"client": "alpha", "lead_id": 501, "retry_count": 3}
