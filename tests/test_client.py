"""Tests for the chat client library."""

import pytest

from conftest import make_token, wait_until
from jobchat.client import ChatClient
from jobchat.client.chat_client import (
    MessageRejectedError,
    ServiceUnavailableError,
    UnauthorizedError,
)

ALICE = "alice"
BOB = "bob"


@pytest.fixture
def alice(client):
    """ChatClient for alice, routed through the test client."""
    return ChatClient(token=make_token(ALICE), http_client=client)


@pytest.fixture
def bob(client):
    return ChatClient(token=make_token(BOB, "EMPLOYER"), http_client=client)


class TestChatClientHealth:
    def test_health_check(self, alice):
        health = alice.health()
        assert health["status"] == "healthy"
        assert "version" in health


class TestChatClientMessages:
    """Tests for sending and reading messages."""

    def test_send_and_read_thread(self, alice, bob, broker):
        ack = alice.send_message(BOB, "Are you hiring?", job_listing_id="listing-4")
        wait_until(lambda: len(broker.settled) == 1)

        messages = bob.thread(BOB, ALICE)
        assert len(messages) == 1
        assert messages[0].id == ack.id
        assert messages[0].sender_id == ALICE
        assert messages[0].job_listing_id == "listing-4"
        assert messages[0].read is False

    def test_inbox_and_sent(self, alice, bob, broker):
        alice.send_message(BOB, "first")
        bob.send_message(ALICE, "reply")
        wait_until(lambda: len(broker.settled) == 2)

        assert [m.content for m in bob.inbox(BOB)] == ["first"]
        assert [m.content for m in bob.sent(BOB)] == ["reply"]

    def test_mark_read_reports_updates(self, alice, bob, broker):
        alice.send_message(BOB, "one")
        alice.send_message(BOB, "two")
        wait_until(lambda: len(broker.settled) == 2)

        assert bob.mark_read(ALICE, BOB) == 2
        assert bob.mark_read(ALICE, BOB) == 0
        assert all(m.read for m in bob.inbox(BOB))


class TestChatClientErrors:
    """Tests for error mapping."""

    def test_rejected_submission(self, alice):
        with pytest.raises(MessageRejectedError):
            alice.send_message(ALICE, "talking to myself")

    def test_missing_token(self, client):
        anonymous = ChatClient(http_client=client)
        with pytest.raises(UnauthorizedError):
            anonymous.inbox(ALICE)

    def test_forbidden_role(self, client):
        guest = ChatClient(token=make_token(ALICE, "GUEST"), http_client=client)
        with pytest.raises(UnauthorizedError):
            guest.inbox(ALICE)

    def test_broker_unavailable(self, alice, broker):
        broker.fail_publish = True
        with pytest.raises(ServiceUnavailableError):
            alice.send_message(BOB, "hello?")

    def test_borrowed_client_is_not_closed(self, client):
        with ChatClient(http_client=client) as chat:
            chat.health()
        assert client.get("/health").status_code == 200
