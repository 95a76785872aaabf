"""Persistence consumer.

Takes deliveries from the ``chat.messages`` queue one at a time:

1. decode the JSON envelope (poison -> reject, no requeue)
2. insert it into the store, idempotent on id (failure -> nack with requeue)
3. hand it to the hub for live fan-out (best effort)
4. ack

The store is the durability point: fan-out problems never block the ack, and
no exception leaves ``handle``, otherwise the queue would stall.
"""

import asyncio
from collections.abc import Awaitable
from typing import Protocol

from pydantic import ValidationError

from jobchat.db.store import MessageStore
from jobchat.logging import get_logger
from jobchat.messaging.broker import TRANSIENT_ERRORS
from jobchat.messaging.hub import Hub
from jobchat.metrics import record_consumed
from jobchat.notifications import NotificationClient
from jobchat.schemas.messages import Envelope

logger = get_logger(__name__)


class Delivery(Protocol):
    """The subset of ``aio_pika.abc.AbstractIncomingMessage`` used here."""

    body: bytes
    redelivered: bool | None

    def ack(self) -> Awaitable[None]: ...

    def nack(self, requeue: bool = True) -> Awaitable[None]: ...

    def reject(self, requeue: bool = False) -> Awaitable[None]: ...


class PersistenceConsumer:
    """Persists and fans out each delivered envelope."""

    def __init__(
        self,
        store: MessageStore,
        hub: Hub,
        notifier: NotificationClient | None = None,
    ):
        self._store = store
        self._hub = hub
        self._notifier = notifier
        self._background: set[asyncio.Task] = set()

    async def handle(self, delivery: Delivery) -> None:
        """Process one delivery; always settles it and never raises."""
        try:
            await self._process(delivery)
        except Exception:
            logger.exception("consumer_unexpected_error")
            record_consumed("requeued")
            await _settle(delivery.nack(requeue=True), "nack")

    async def _process(self, delivery: Delivery) -> None:
        try:
            envelope = Envelope.from_wire(delivery.body)
        except ValidationError as e:
            logger.warning(
                "consumer_poison_message",
                error_count=e.error_count(),
                body_size=len(delivery.body or b""),
            )
            record_consumed("poison")
            await _settle(delivery.reject(requeue=False), "reject")
            return

        try:
            created = await self._store.insert(envelope)
        except Exception as e:
            logger.error(
                "consumer_store_failed",
                message_id=envelope.id,
                error=str(e),
                redelivered=delivery.redelivered,
            )
            record_consumed("requeued")
            await _settle(delivery.nack(requeue=True), "nack")
            return

        # Redeliveries are fanned out again; clients dedup by id.
        self._fan_out(envelope)
        if created:
            self._notify(envelope)

        await _settle(delivery.ack(), "ack")
        record_consumed("persisted" if created else "duplicate")
        logger.debug(
            "consumer_message_handled",
            message_id=envelope.id,
            duplicate=not created,
        )

    def _fan_out(self, envelope: Envelope) -> None:
        try:
            self._hub.deliver(envelope)
        except Exception as e:
            logger.warning("consumer_fanout_failed", message_id=envelope.id, error=str(e))

    def _notify(self, envelope: Envelope) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._notifier.notify_new_message(envelope))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for outstanding notification tasks (used on shutdown)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


async def _settle(action: Awaitable[None], kind: str) -> None:
    try:
        await action
    except TRANSIENT_ERRORS as e:
        # The channel is gone; the broker redelivers anything unacked.
        logger.warning("consumer_settle_failed", action=kind, error=str(e))
