"""Tests for the notification hook."""

import json

import httpx
import pytest

from conftest import make_envelope
from jobchat.notifications import NOTIFICATIONS_PATH, PREVIEW_CHARS, NotificationClient


def recording_transport(requests: list, status_code: int = 201) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": True})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
class TestNotificationClient:
    """Tests for NotificationClient."""

    async def test_posts_notification_for_receiver(self):
        requests = []
        client = NotificationClient("http://notify.local/", transport=recording_transport(requests))

        assert await client.notify_new_message(make_envelope("alice", "bob", "See you at 10")) is True

        request = requests[0]
        assert request.method == "POST"
        assert request.url == httpx.URL(f"http://notify.local{NOTIFICATIONS_PATH}")
        assert json.loads(request.content) == {
            "title": "New message",
            "content": "See you at 10",
            "recipient_type": "id",
            "recipient_value": "bob",
        }
        await client.aclose()

    async def test_long_content_is_previewed(self):
        requests = []
        client = NotificationClient("http://notify.local", transport=recording_transport(requests))

        await client.notify_new_message(make_envelope(content="x" * 500))

        preview = json.loads(requests[0].content)["content"]
        assert len(preview) == PREVIEW_CHARS
        assert preview.endswith("...")
        await client.aclose()

    async def test_rejected_notification_returns_false(self):
        requests = []
        client = NotificationClient(
            "http://notify.local",
            transport=recording_transport(requests, status_code=500),
        )

        assert await client.notify("bob", "New message", "hi") is False
        await client.aclose()

    async def test_transport_error_returns_false(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = NotificationClient("http://notify.local", transport=httpx.MockTransport(handler))

        assert await client.notify("bob", "New message", "hi") is False
        await client.aclose()
