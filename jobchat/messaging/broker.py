"""AMQP broker adapter for chat messages.

Topology (idempotent, re-asserted after every reconnect):
- exchange ``chat``: topic, durable, not auto-delete
- queue ``chat.messages``: durable, non-exclusive, not auto-delete
- binding ``chat.messages`` <- ``chat`` with routing key ``message.new``

Publishing and consuming both go through ``ensure_connected``. A publish that
fails is retried once after a reconnect and then surfaces as
``BrokerUnavailableError``. The consume loop never gives up: it backs off
(5 s floor by default) and re-subscribes; anything left unacked on a dead
channel is redelivered by the broker.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from jobchat.errors import BrokerClosedError, BrokerUnavailableError
from jobchat.logging import get_logger
from jobchat.metrics import record_publish
from jobchat.schemas.messages import Envelope

logger = get_logger(__name__)

EXCHANGE_NAME = "chat"
QUEUE_NAME = "chat.messages"
ROUTING_KEY = "message.new"

# Errors that mean "the broker link is broken, reconnect and retry".
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    AMQPError,
    ChannelInvalidStateError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
    BrokerUnavailableError,
)

Connector = Callable[..., Awaitable[AbstractConnection]]
DeliveryHandler = Callable[[AbstractIncomingMessage], Awaitable[None]]


class BrokerState(str, Enum):
    """Lifecycle of the broker adapter."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class Broker:
    """Owns one AMQP connection and channel, with reconnect.

    Args:
        url: AMQP connection URL.
        prefetch: Unacked deliveries the broker may push to the consumer.
        reconnect_delay: First backoff delay of the consume loop, in seconds.
        max_reconnect_delay: Upper bound of the exponential backoff.
        publish_timeout: Seconds to wait for a publisher confirm.
        connector: Coroutine that dials the broker (``aio_pika.connect``).
    """

    def __init__(
        self,
        url: str,
        *,
        prefetch: int = 32,
        reconnect_delay: float = 5.0,
        max_reconnect_delay: float = 60.0,
        publish_timeout: float = 5.0,
        connect_timeout: float = 10.0,
        connector: Connector = aio_pika.connect,
    ):
        self._url = url
        self._prefetch = prefetch
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max(max_reconnect_delay, reconnect_delay)
        self._publish_timeout = publish_timeout
        self._connect_timeout = connect_timeout
        self._connector = connector

        self._lock = asyncio.Lock()
        self._state = BrokerState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._queue: AbstractQueue | None = None
        self._lost = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Any) -> "Broker":
        return cls(
            settings.broker_url,
            prefetch=settings.broker_prefetch,
            reconnect_delay=settings.broker_reconnect_delay,
            publish_timeout=settings.broker_publish_timeout,
        )

    @property
    def state(self) -> BrokerState:
        return self._state

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Dial the broker and declare the topology now.

        Raises:
            BrokerUnavailableError: If the broker cannot be reached.
        """
        async with self._lock:
            await self._ensure_connected_locked()

    async def ensure_connected(self) -> None:
        """Proceed if healthy, otherwise reconnect and re-declare."""
        async with self._lock:
            await self._ensure_connected_locked()

    def _healthy(self) -> bool:
        return (
            self._state is BrokerState.READY
            and self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def _ensure_connected_locked(self) -> None:
        if self._state is BrokerState.CLOSED:
            raise BrokerClosedError("broker adapter is closed")
        if self._healthy():
            return

        await self._discard()
        self._state = BrokerState.CONNECTING
        logger.info("broker_connecting", exchange=EXCHANGE_NAME, queue=QUEUE_NAME)

        connection: AbstractConnection | None = None
        try:
            connection = await self._connector(self._url, timeout=self._connect_timeout)
            channel = await connection.channel(publisher_confirms=True)
            await channel.set_qos(prefetch_count=self._prefetch)
            exchange = await channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
                auto_delete=False,
            )
            queue = await channel.declare_queue(
                QUEUE_NAME,
                durable=True,
                exclusive=False,
                auto_delete=False,
            )
            await queue.bind(exchange, routing_key=ROUTING_KEY)
        except TRANSIENT_ERRORS as e:
            self._state = BrokerState.DISCONNECTED
            if connection is not None and not connection.is_closed:
                await _close_quietly(connection)
            logger.warning("broker_connect_failed", error=str(e), error_type=type(e).__name__)
            raise BrokerUnavailableError(f"cannot connect to broker: {e}") from e

        self._lost = asyncio.Event()
        connection.close_callbacks.add(self._on_closed)
        channel.close_callbacks.add(self._on_closed)
        self._connection = connection
        self._channel = channel
        self._exchange = exchange
        self._queue = queue
        self._state = BrokerState.READY
        logger.info("broker_ready", prefetch=self._prefetch)

    def _on_closed(self, sender: Any, *args: Any) -> None:
        if sender is not self._connection and sender is not self._channel:
            return
        if self._state is not BrokerState.CLOSED:
            self._state = BrokerState.DISCONNECTED
            logger.warning("broker_connection_lost", reason=str(args[0]) if args else None)
        self._lost.set()

    def _mark_disconnected(self) -> None:
        if self._state is not BrokerState.CLOSED:
            self._state = BrokerState.DISCONNECTED
        self._lost.set()

    async def _discard(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        self._exchange = None
        self._queue = None
        if connection is not None and not connection.is_closed:
            await _close_quietly(connection)

    async def close(self) -> None:
        """Shut down for good; later publishes raise BrokerClosedError."""
        async with self._lock:
            self._state = BrokerState.CLOSED
            self._lost.set()
            await self._discard()
        logger.info("broker_closed")

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    async def publish(self, envelope: Envelope) -> None:
        """Publish an envelope and wait for the broker to confirm it.

        Raises:
            BrokerUnavailableError: If the publish fails after one reconnect.
        """
        message = aio_pika.Message(
            body=envelope.to_wire().encode("utf-8"),
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope.id,
        )
        start = time.perf_counter()
        last_error: BaseException | None = None

        async with self._lock:
            for attempt in (1, 2):
                try:
                    await self._ensure_connected_locked()
                    assert self._exchange is not None
                    await self._exchange.publish(
                        message,
                        routing_key=ROUTING_KEY,
                        timeout=self._publish_timeout,
                    )
                except BrokerClosedError:
                    record_publish("failed", time.perf_counter() - start)
                    raise
                except TRANSIENT_ERRORS as e:
                    last_error = e
                    self._mark_disconnected()
                    logger.warning(
                        "broker_publish_failed",
                        attempt=attempt,
                        message_id=envelope.id,
                        error=str(e),
                    )
                    continue
                record_publish("ok", time.perf_counter() - start)
                return

        record_publish("failed", time.perf_counter() - start)
        raise BrokerUnavailableError(f"publish failed: {last_error}") from last_error

    # -------------------------------------------------------------------------
    # Consume
    # -------------------------------------------------------------------------

    def _backoff(self, failures: int) -> float:
        return min(self._reconnect_delay * (2**failures), self._max_reconnect_delay)

    async def consume(self, handler: DeliveryHandler) -> None:
        """Feed deliveries to ``handler`` one at a time until closed.

        Deliveries use manual acknowledgement; the handler must ack, nack or
        reject each one. Runs until ``close()`` or task cancellation.
        """
        failures = 0
        while self._state is not BrokerState.CLOSED:
            try:
                async with self._lock:
                    await self._ensure_connected_locked()
                    queue = self._queue
                    lost = self._lost
                assert queue is not None
                failures = 0
                logger.info("broker_consumer_started", queue=QUEUE_NAME)
                await self._drain(queue, lost, handler)
                if self._state is not BrokerState.CLOSED:
                    logger.warning("broker_consumer_interrupted", queue=QUEUE_NAME)
                    self._mark_disconnected()
            except BrokerClosedError:
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self._backoff(failures)
                failures += 1
                self._mark_disconnected()
                logger.warning(
                    "broker_consume_retry",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
        logger.info("broker_consumer_stopped")

    async def _drain(self, queue: AbstractQueue, lost: asyncio.Event, handler: DeliveryHandler) -> None:
        # Iterate until the queue iterator ends or the link is reported lost.
        async def iterate() -> None:
            async with queue.iterator() as deliveries:
                async for message in deliveries:
                    await handler(message)

        iterate_task = asyncio.create_task(iterate())
        lost_task = asyncio.create_task(lost.wait())
        try:
            await asyncio.wait({iterate_task, lost_task}, return_when=asyncio.FIRST_COMPLETED)
            error = None
            if iterate_task.done() and not iterate_task.cancelled():
                error = iterate_task.exception()
        finally:
            for task in (iterate_task, lost_task):
                task.cancel()
            await asyncio.gather(iterate_task, lost_task, return_exceptions=True)
        if error is not None:
            raise error


async def _close_quietly(connection: AbstractConnection) -> None:
    try:
        await connection.close()
    except TRANSIENT_ERRORS as e:
        logger.debug("broker_close_error", error=str(e))
