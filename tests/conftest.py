"""Shared test fixtures for pytest."""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from jobchat.errors import BrokerUnavailableError
from jobchat.messaging.broker import BrokerState
from jobchat.messaging.hub import Hub
from jobchat.schemas.messages import Envelope

TEST_SECRET = "test-secret"

BASE_TIME = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def make_token(user_id: str, user_type: str = "CANDIDATE", secret: str = TEST_SECRET) -> str:
    return jwt.encode({"user_id": user_id, "user_type": user_type}, secret, algorithm="HS256")


def auth_headers(user_id: str, user_type: str = "CANDIDATE") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, user_type)}"}


def make_envelope(
    sender_id: str = "alice",
    receiver_id: str = "bob",
    content: str = "hello",
    offset_seconds: int = 0,
    **kwargs,
) -> Envelope:
    return Envelope(
        id=kwargs.pop("id", str(uuid.uuid4())),
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        sent_at=BASE_TIME + timedelta(seconds=offset_seconds),
        **kwargs,
    )


def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll from the test thread until the server-side loop catches up."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


async def async_wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met before timeout")


class FakeDelivery:
    """In-memory stand-in for an AMQP delivery."""

    def __init__(self, body: bytes, redelivered: bool = False):
        self.body = body
        self.redelivered = redelivered
        self.outcome: str | None = None
        self.requeue: bool | None = None

    async def ack(self) -> None:
        self.outcome = "ack"

    async def nack(self, requeue: bool = True) -> None:
        self.outcome = "nack"
        self.requeue = requeue

    async def reject(self, requeue: bool = False) -> None:
        self.outcome = "reject"
        self.requeue = requeue


class FakeTransport:
    """Records frames sent to a client; ``stalled`` blocks every send."""

    def __init__(self, stalled: bool = False):
        self.sent: list[str] = []
        self.closed_with: int | None = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._gate = asyncio.Event()
        if not stalled:
            self._gate.set()

    async def send_text(self, data: str) -> None:
        await self._gate.wait()
        self.sent.append(data)

    async def receive(self) -> dict:
        return await self._inbound.get()

    async def close(self, code: int = 1000) -> None:
        if self.closed_with is None:
            self.closed_with = code
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": code})

    def release(self) -> None:
        self._gate.set()

    def client_disconnects(self) -> None:
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def received_ids(self) -> list[str]:
        return [json.loads(frame)["id"] for frame in self.sent]


async def connect(hub: Hub, user_id: str, transport: FakeTransport) -> asyncio.Task:
    before = hub.connection_count(user_id)
    task = asyncio.create_task(hub.serve(user_id, transport))
    await async_wait_until(lambda: hub.connection_count(user_id) == before + 1)
    return task


class InMemoryBroker:
    """Broker double: publishes go straight to the consume loop.

    ``deliver_copies`` makes every publish arrive that many times, the extra
    copies flagged as redelivered. ``fail_publish`` makes publishes raise.
    """

    def __init__(self):
        self.state = BrokerState.DISCONNECTED
        self.published: list[Envelope] = []
        self.settled: list[FakeDelivery] = []
        self.fail_publish = False
        self.deliver_copies = 1
        self._queue: asyncio.Queue[FakeDelivery] | None = None

    def _pending(self) -> asyncio.Queue[FakeDelivery]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def connect(self) -> None:
        self.state = BrokerState.READY

    async def publish(self, envelope: Envelope) -> None:
        if self.fail_publish:
            raise BrokerUnavailableError("publish failed: connection refused")
        self.published.append(envelope)
        body = envelope.to_wire().encode("utf-8")
        for copy in range(self.deliver_copies):
            self._pending().put_nowait(FakeDelivery(body, redelivered=copy > 0))

    async def consume(self, handler) -> None:
        queue = self._pending()
        while True:
            delivery = await queue.get()
            await handler(delivery)
            self.settled.append(delivery)

    async def close(self) -> None:
        self.state = BrokerState.CLOSED


@pytest.fixture
def settings_env(monkeypatch):
    """Point settings at a unique shared in-memory database."""
    import jobchat.db.engine
    from jobchat.config import get_settings

    unique_name = f"test_{uuid.uuid4().hex}"
    db_url = f"sqlite+aiosqlite:///file:{unique_name}?mode=memory&cache=shared&uri=true"
    monkeypatch.setenv("STORE_URL", db_url)
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.delenv("NOTIFICATION_URL", raising=False)

    get_settings.cache_clear()
    jobchat.db.engine._engine = None
    jobchat.db.engine._session_factory = None

    yield get_settings()

    get_settings.cache_clear()
    jobchat.db.engine._engine = None
    jobchat.db.engine._session_factory = None


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def client(settings_env, broker):
    """Test client for the server with an in-memory broker and database."""
    from fastapi.testclient import TestClient

    from jobchat.server import create_app

    app = create_app(broker=broker)
    with TestClient(app) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def store():
    """MessageStore over a fresh in-memory database."""
    from jobchat.db import models  # noqa: F401
    from jobchat.db.store import MessageStore

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def session():
        async with factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    yield MessageStore(session_factory=session)

    await engine.dispose()
