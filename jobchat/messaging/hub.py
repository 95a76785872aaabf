"""WebSocket connection hub.

Tracks live WebSocket connections per user and fans envelopes out to the
receiver's connections. Each connection owns a bounded outbound buffer and two
tasks: a writer that drains the buffer onto the socket and a reader that
drains inbound frames until the client goes away. When either task ends, or
the hub closes, both are stopped before the close frame is sent and the
connection is unregistered.

Fan-out never waits on a client: a full buffer drops the frame for that
connection only. Persisted history stays authoritative, so a dropped live
frame shows up on the next history fetch.
"""

import asyncio
import uuid
from typing import Any, Protocol

from jobchat.logging import get_logger
from jobchat.metrics import record_connection, record_fanout
from jobchat.schemas.messages import Envelope

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 64

# Close code sent when the hub is shutting down.
GOING_AWAY = 1001

# Seconds Hub.close waits for connections to finish closing.
CLOSE_TIMEOUT = 5.0


class Transport(Protocol):
    """The subset of ``starlette.websockets.WebSocket`` the hub uses."""

    async def send_text(self, data: str) -> None: ...

    async def receive(self) -> dict[str, Any]: ...

    async def close(self, code: int = 1000) -> None: ...


class Connection:
    """One WebSocket session of a user."""

    def __init__(self, user_id: str, transport: Transport, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.id = uuid.uuid4().hex[:8]
        self.user_id = user_id
        self.transport = transport
        self.dropped = 0
        self._buffer: asyncio.Queue[str | None] = asyncio.Queue(maxsize=buffer_size)
        self._closed = False
        self._stopped = asyncio.Event()
        self._finished = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._buffer.qsize()

    def offer(self, frame: str) -> bool:
        """Enqueue a frame without waiting; False if closed or full."""
        if self._closed:
            return False
        try:
            self._buffer.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close_buffer(self) -> None:
        """Discard pending frames and signal the writer to stop."""
        if self._closed:
            return
        self._closed = True
        while not self._buffer.empty():
            self._buffer.get_nowait()
        self._buffer.put_nowait(None)
        self._stopped.set()

    async def write_loop(self) -> None:
        while True:
            frame = await self._buffer.get()
            if frame is None or self._closed:
                return
            await self.transport.send_text(frame)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def wait_finished(self) -> None:
        """Wait until the transport has been closed by ``Hub.serve``."""
        await self._finished.wait()

    def mark_finished(self) -> None:
        self._finished.set()

    async def read_loop(self) -> None:
        # Clients only send pings and close frames; anything else is ignored.
        while True:
            message = await self.transport.receive()
            if message.get("type") == "websocket.disconnect":
                return


class Hub:
    """Registry of live connections keyed by user id.

    Registry updates are serialized by a write lock and replace the per-user
    list instead of mutating it, so ``deliver`` works on a consistent
    snapshot without awaiting anything.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self._buffer_size = buffer_size
        self._connections: dict[str, tuple[Connection, ...]] = {}
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def connection_count(self, user_id: str | None = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, ()))
        return sum(len(conns) for conns in self._connections.values())

    def connections_for(self, user_id: str) -> tuple[Connection, ...]:
        return self._connections.get(user_id, ())

    async def register(self, user_id: str, transport: Transport) -> Connection | None:
        """Add a connection for ``user_id``; None once the hub is closed."""
        connection = Connection(user_id, transport, self._buffer_size)
        async with self._write_lock:
            if self._closed:
                return None
            self._connections[user_id] = (*self._connections.get(user_id, ()), connection)
        record_connection(1)
        logger.info("ws_client_connected", user_id=user_id, connection_id=connection.id)
        return connection

    async def unregister(self, connection: Connection) -> None:
        connection.close_buffer()
        async with self._write_lock:
            current = self._connections.get(connection.user_id, ())
            if connection not in current:
                return
            remaining = tuple(c for c in current if c is not connection)
            if remaining:
                self._connections[connection.user_id] = remaining
            else:
                del self._connections[connection.user_id]
        record_connection(-1)
        logger.info(
            "ws_client_disconnected",
            user_id=connection.user_id,
            connection_id=connection.id,
            dropped=connection.dropped,
        )

    async def serve(self, user_id: str, transport: Transport) -> None:
        """Run a connection until its reader or writer stops, or the hub closes.

        The transport must already be accepted. Returns after the connection
        has been unregistered and the transport closed. The close frame is
        only sent once both tasks have finished, so it never overlaps a send.
        """
        connection = await self.register(user_id, transport)
        if connection is None:
            await _close_transport(transport, GOING_AWAY)
            return

        reader = asyncio.create_task(_run(connection, connection.read_loop, "reader"))
        writer = asyncio.create_task(_run(connection, connection.write_loop, "writer"))
        stop = asyncio.create_task(connection.wait_stopped())
        tasks = (reader, writer, stop)
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            connection.close_buffer()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.unregister(connection)
            await _close_transport(transport, GOING_AWAY if self._closed else 1000)
            connection.mark_finished()

    def deliver(self, envelope: Envelope) -> int:
        """Push an envelope to every live connection of its receiver.

        The sender's own connections get no echo. Never blocks and never
        raises.

        Returns:
            Number of connections the frame was queued on.
        """
        if self._closed:
            return 0
        targets = self._connections.get(envelope.receiver_id, ())
        if not targets:
            return 0

        frame = envelope.to_wire()
        queued = 0
        for connection in targets:
            if connection.offer(frame):
                queued += 1
            else:
                logger.debug(
                    "ws_frame_dropped",
                    user_id=envelope.receiver_id,
                    connection_id=connection.id,
                    message_id=envelope.id,
                )
        record_fanout("queued", queued)
        if queued < len(targets):
            record_fanout("dropped", len(targets) - queued)
        return queued

    async def close(self) -> None:
        """Stop accepting connections and shut down every live one.

        Pending frames are discarded: nothing is written after close. Each
        connection's ``serve`` stops its writer and then sends the 1001 close;
        this waits for them up to ``CLOSE_TIMEOUT`` seconds.
        """
        async with self._write_lock:
            if self._closed:
                return
            self._closed = True
            connections = [c for conns in self._connections.values() for c in conns]
        for connection in connections:
            connection.close_buffer()
        if connections:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(c.wait_finished() for c in connections)),
                    timeout=CLOSE_TIMEOUT,
                )
            except TimeoutError:
                logger.warning("hub_close_timeout", connections=len(connections))
        logger.info("hub_closed", connections=len(connections))


async def _run(connection: Connection, loop: Any, role: str) -> None:
    try:
        await loop()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        # Transport errors end the connection; the client reconnects.
        logger.debug(
            "ws_transport_error",
            user_id=connection.user_id,
            connection_id=connection.id,
            task=role,
            error=str(e),
        )


async def _close_transport(transport: Transport, code: int = 1000) -> None:
    try:
        await transport.close(code=code)
    except Exception as e:
        # Already closed by the peer or the server.
        logger.debug("ws_close_ignored", error=str(e))
