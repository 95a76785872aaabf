"""HTTP client for the chat service.

Usage:
    from jobchat.client import ChatClient

    with ChatClient("http://localhost:8089", token="...") as client:
        ack = client.send_message("receiver-1", "hello")
        thread = client.thread("me", "receiver-1")
        client.mark_read("receiver-1", "me")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


class ChatClientError(Exception):
    """Base exception for chat client errors."""

    pass


class MessageRejectedError(ChatClientError):
    """The server rejected the submission (HTTP 400)."""

    pass


class UnauthorizedError(ChatClientError):
    """The token was missing, invalid or lacked a chat role (HTTP 401/403)."""

    pass


class ServiceUnavailableError(ChatClientError):
    """The broker was unavailable; the submission may be retried (HTTP 503)."""

    pass


@dataclass
class SentMessage:
    """Acknowledgement of an accepted submission."""

    id: str
    sent_at: str


@dataclass
class Message:
    """A chat message as returned by the history endpoints."""

    id: str
    sender_id: str
    receiver_id: str
    content: str
    sent_at: str
    read: bool
    job_listing_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            sender_id=data["sender_id"],
            receiver_id=data["receiver_id"],
            content=data["content"],
            sent_at=data["sent_at"],
            read=data.get("read", False),
            job_listing_id=data.get("job_listing_id"),
        )


class ChatClient:
    """Synchronous client for the chat HTTP API.

    Args:
        base_url: Base URL of the chat service (e.g. "http://localhost:8089").
        token: Bearer token of the calling user.
        timeout: Request timeout in seconds (default: 10).
        http_client: Pre-built httpx client to use instead of creating one.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8089",
        token: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    def __enter__(self) -> ChatClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = self._client.request(method, path, headers=self._headers, **kwargs)
        if response.status_code == 400:
            raise MessageRejectedError(_detail(response))
        if response.status_code in (401, 403):
            raise UnauthorizedError(_detail(response))
        if response.status_code == 503:
            raise ServiceUnavailableError(_detail(response))
        response.raise_for_status()
        return response

    def health(self) -> dict[str, str]:
        return self._client.get("/health").json()

    def send_message(
        self,
        receiver_id: str,
        content: str,
        job_listing_id: str | None = None,
    ) -> SentMessage:
        """Submit a message as the token's user.

        Raises:
            MessageRejectedError: Invalid receiver or content.
            ServiceUnavailableError: Broker down; safe to retry.
        """
        payload: dict[str, Any] = {"receiver_id": receiver_id, "content": content}
        if job_listing_id:
            payload["job_listing_id"] = job_listing_id
        data = self._request("POST", "/messages", json=payload).json()
        return SentMessage(id=data["id"], sent_at=data["sent_at"])

    def inbox(self, user_id: str) -> list[Message]:
        return self._messages(f"/messages/inbox/{user_id}")

    def sent(self, user_id: str) -> list[Message]:
        return self._messages(f"/messages/sent/{user_id}")

    def thread(self, user_a: str, user_b: str) -> list[Message]:
        return self._messages(f"/messages/{user_a}/{user_b}")

    def mark_read(self, sender_id: str, receiver_id: str) -> int:
        """Mark messages from sender to receiver as read; returns rows updated."""
        data = self._request("PUT", f"/messages/{sender_id}/{receiver_id}/read").json()
        return data.get("updated", 0)

    def _messages(self, path: str) -> list[Message]:
        return [Message.from_dict(item) for item in self._request("GET", path).json()]


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text
