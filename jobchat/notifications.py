"""Cross-service notification hook.

After a new message is persisted, the receiver gets a notification through
the university service's internal notifications endpoint. Calls are
fire-and-forget: they carry a 10 s timeout, failures are logged, and they
never influence message acknowledgement.
"""

import httpx

from jobchat.logging import get_logger
from jobchat.schemas.messages import Envelope

logger = get_logger(__name__)

NOTIFICATIONS_PATH = "/internal/notifications"

# Notification bodies carry a preview, not the whole message.
PREVIEW_CHARS = 120


class NotificationClient:
    """Posts notifications to the notification service.

    Args:
        base_url: Base URL of the service (e.g. "http://university-service:8088").
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def notify(self, user_id: str, title: str, content: str) -> bool:
        """Send one notification; returns False instead of raising on failure."""
        payload = {
            "title": title,
            "content": content,
            "recipient_type": "id",
            "recipient_value": user_id,
        }
        try:
            response = await self._client.post(NOTIFICATIONS_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.warning("notification_failed", user_id=user_id, error=str(e))
            return False

        if response.status_code not in (200, 201):
            logger.warning(
                "notification_rejected",
                user_id=user_id,
                status_code=response.status_code,
            )
            return False

        logger.debug("notification_sent", user_id=user_id, title=title)
        return True

    async def notify_new_message(self, envelope: Envelope) -> bool:
        preview = envelope.content
        if len(preview) > PREVIEW_CHARS:
            preview = preview[: PREVIEW_CHARS - 3] + "..."
        return await self.notify(envelope.receiver_id, "New message", preview)
