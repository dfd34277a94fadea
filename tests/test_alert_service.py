import json
from unittest.mock import patch

import httpx
import pytest

from answerbot.config import settings
from answerbot.services.alert_service import alert_critical, format_alert, send_alert


def recording_transport(requests: list, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="ok")

    return httpx.MockTransport(handler)


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_returns_false_when_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_webhook_url", None)

        assert await send_alert("ERROR", "Test message") is False

    @pytest.mark.asyncio
    async def test_posts_to_webhook(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_webhook_url", "https://hooks.example.test/alerts")
        requests = []

        result = await send_alert("ERROR", "Test error message", transport=recording_transport(requests))

        assert result is True
        assert len(requests) == 1
        assert str(requests[0].url) == "https://hooks.example.test/alerts"
        payload = json.loads(requests[0].content)
        assert "ERROR" in payload["text"]
        assert "Test error message" in payload["text"]

    @pytest.mark.asyncio
    async def test_includes_context_in_message(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_webhook_url", "https://hooks.example.test/alerts")
        requests = []

        await send_alert(
            "ERROR", "Test message", {"queue": "slack-message-queue", "error": "down"}, recording_transport(requests)
        )

        text = json.loads(requests[0].content)["text"]
        assert "queue: slack-message-queue" in text
        assert "error: down" in text

    @pytest.mark.asyncio
    async def test_returns_false_on_webhook_error(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_webhook_url", "https://hooks.example.test/alerts")

        result = await send_alert("ERROR", "Test message", transport=recording_transport([], status_code=400))

        assert result is False

    @pytest.mark.asyncio
    async def test_returns_false_on_exception(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_webhook_url", "https://hooks.example.test/alerts")

        def handler(request):
            raise httpx.ConnectError("Network error")

        assert await send_alert("ERROR", "Test message", transport=httpx.MockTransport(handler)) is False


class TestFormatAlert:
    def test_level_prefix(self):
        assert format_alert("CRITICAL", "boom").startswith(":fire: *CRITICAL*")

    def test_unknown_level_gets_default_prefix(self):
        assert format_alert("NOTICE", "hi").startswith(":loudspeaker:")

    def test_no_context_block_without_context(self):
        assert "```" not in format_alert("INFO", "hi")


class TestShortcuts:
    @pytest.mark.asyncio
    async def test_alert_critical_uses_critical_level(self):
        with patch("answerbot.services.alert_service.send_alert") as mock_send:
            mock_send.return_value = True
            await alert_critical("Queue down", {"queue": "q"})

        mock_send.assert_awaited_once_with("CRITICAL", "Queue down", {"queue": "q"})
