"""Tests for the WebSocket connection hub."""

import asyncio
import json

import pytest

from conftest import FakeTransport, async_wait_until, connect, make_envelope
from jobchat.messaging.hub import GOING_AWAY, Hub


@pytest.mark.asyncio
class TestDeliver:
    """Tests for fan-out to receivers."""

    async def test_frame_reaches_every_receiver_connection(self):
        hub = Hub()
        phone, laptop = FakeTransport(), FakeTransport()
        await connect(hub, "bob", phone)
        await connect(hub, "bob", laptop)
        envelope = make_envelope("alice", "bob")

        assert hub.deliver(envelope) == 2
        await async_wait_until(lambda: phone.sent and laptop.sent)

        assert json.loads(phone.sent[0]) == json.loads(envelope.to_wire())
        assert laptop.received_ids() == [envelope.id]
        await hub.close()

    async def test_sender_gets_no_echo(self):
        hub = Hub()
        alice, bob = FakeTransport(), FakeTransport()
        await connect(hub, "alice", alice)
        await connect(hub, "bob", bob)

        hub.deliver(make_envelope("alice", "bob"))
        await async_wait_until(lambda: bob.sent)
        await asyncio.sleep(0.05)

        assert alice.sent == []
        await hub.close()

    async def test_offline_receiver_is_a_no_op(self):
        hub = Hub()
        assert hub.deliver(make_envelope("alice", "bob")) == 0

    async def test_frames_arrive_in_delivery_order(self):
        hub = Hub()
        bob = FakeTransport()
        await connect(hub, "bob", bob)
        envelopes = [make_envelope("alice", "bob", str(i), offset_seconds=i) for i in range(10)]

        for envelope in envelopes:
            hub.deliver(envelope)
        await async_wait_until(lambda: len(bob.sent) == 10)

        assert bob.received_ids() == [e.id for e in envelopes]
        await hub.close()

    async def test_slow_connection_drops_without_blocking_others(self):
        """A stalled client loses frames past its buffer; other clients get everything."""
        hub = Hub(buffer_size=64)
        stalled, responsive = FakeTransport(stalled=True), FakeTransport()
        await connect(hub, "bob", stalled)
        await connect(hub, "bob", responsive)
        slow = next(c for c in hub.connections_for("bob") if c.transport is stalled)

        envelopes = [make_envelope("alice", "bob", str(i)) for i in range(200)]
        for envelope in envelopes:
            hub.deliver(envelope)
            await asyncio.sleep(0)
        await async_wait_until(lambda: len(responsive.sent) == 200)

        assert responsive.received_ids() == [e.id for e in envelopes]
        assert slow.pending == 64
        assert slow.dropped >= 200 - 64 - 1
        assert stalled.sent == []
        await hub.close()


@pytest.mark.asyncio
class TestLifecycle:
    """Tests for registration, disconnect and shutdown."""

    async def test_client_disconnect_unregisters(self):
        hub = Hub()
        bob = FakeTransport()
        task = await connect(hub, "bob", bob)

        bob.client_disconnects()
        await asyncio.wait_for(task, timeout=1)

        assert hub.connection_count("bob") == 0
        assert hub.deliver(make_envelope("alice", "bob")) == 0

    async def test_failed_send_ends_connection(self):
        class BrokenTransport(FakeTransport):
            async def send_text(self, data: str) -> None:
                raise ConnectionResetError("peer gone")

        hub = Hub()
        broken = BrokenTransport()
        task = await connect(hub, "bob", broken)

        hub.deliver(make_envelope("alice", "bob"))
        await asyncio.wait_for(task, timeout=1)

        assert hub.connection_count() == 0
        assert broken.closed_with == 1000

    async def test_other_connections_survive_a_disconnect(self):
        hub = Hub()
        phone, laptop = FakeTransport(), FakeTransport()
        phone_task = await connect(hub, "bob", phone)
        await connect(hub, "bob", laptop)

        phone.client_disconnects()
        await asyncio.wait_for(phone_task, timeout=1)

        assert hub.deliver(make_envelope("alice", "bob")) == 1
        await async_wait_until(lambda: laptop.sent)
        await hub.close()

    async def test_close_stops_all_writes(self):
        """Nothing is written after close, including frames still buffered."""
        hub = Hub()
        stalled = FakeTransport(stalled=True)
        task = await connect(hub, "bob", stalled)
        for i in range(5):
            hub.deliver(make_envelope("alice", "bob", str(i)))

        await hub.close()
        await asyncio.wait_for(task, timeout=1)
        stalled.release()
        await asyncio.sleep(0.05)

        assert stalled.sent == []
        assert stalled.closed_with == GOING_AWAY
        assert hub.connection_count() == 0
        assert hub.deliver(make_envelope("alice", "bob")) == 0

    async def test_close_frame_waits_for_inflight_send(self):
        """A send blocked on a slow client is stopped before the close frame."""

        class SendTrackingTransport(FakeTransport):
            def __init__(self):
                super().__init__(stalled=True)
                self.sending = False
                self.closed_during_send = False

            async def send_text(self, data: str) -> None:
                self.sending = True
                try:
                    await super().send_text(data)
                finally:
                    self.sending = False

            async def close(self, code: int = 1000) -> None:
                self.closed_during_send = self.closed_during_send or self.sending
                await super().close(code)

        hub = Hub()
        slow = SendTrackingTransport()
        task = await connect(hub, "bob", slow)
        hub.deliver(make_envelope("alice", "bob"))
        await async_wait_until(lambda: slow.sending)

        await hub.close()

        assert task.done()
        assert slow.closed_with == GOING_AWAY
        assert slow.closed_during_send is False
        assert slow.sent == []

    async def test_connections_after_close_are_refused(self):
        hub = Hub()
        await hub.close()
        late = FakeTransport()

        await asyncio.wait_for(hub.serve("bob", late), timeout=1)

        assert late.closed_with == GOING_AWAY
        assert hub.connection_count() == 0

    async def test_close_is_idempotent(self):
        hub = Hub()
        await hub.close()
        await hub.close()
        assert hub.closed
