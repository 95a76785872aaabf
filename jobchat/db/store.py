"""Message store.

Persists envelopes and their read flag, and answers the history queries used
by the HTTP adapters. Inserts are idempotent on the envelope id so that broker
redeliveries collapse into a single row.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from jobchat.db.engine import get_session
from jobchat.db.models import ChatMessage
from jobchat.errors import StoreError
from jobchat.logging import get_logger
from jobchat.schemas.messages import Envelope

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class MessageStore:
    """Async repository over the ``chat_messages`` table.

    Args:
        session_factory: Returns an async context manager yielding a session
            that commits on exit. Defaults to the process-wide engine.
    """

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session = session_factory

    async def insert(self, envelope: Envelope) -> bool:
        """Persist an envelope unless a row with its id already exists.

        Returns:
            True if a new row was written, False for a duplicate id.

        Raises:
            StoreError: On any other database failure.
        """
        try:
            async with self._session() as session:
                existing = await session.get(ChatMessage, envelope.id)
                if existing is not None:
                    return False
                session.add(ChatMessage.from_envelope(envelope))
        except IntegrityError:
            # Lost a race against a concurrent insert of the same id.
            logger.debug("message_insert_conflict", message_id=envelope.id)
            return False
        except SQLAlchemyError as e:
            raise StoreError(f"insert failed for message {envelope.id}: {e}") from e
        return True

    async def get(self, message_id: str) -> Envelope | None:
        async with self._session() as session:
            row = await session.get(ChatMessage, message_id)
            return row.to_envelope() if row is not None else None

    async def thread(self, user_a: str, user_b: str) -> list[Envelope]:
        """Messages exchanged between two users, oldest first."""
        query = (
            select(ChatMessage)
            .where(
                or_(
                    and_(ChatMessage.sender_id == user_a, ChatMessage.receiver_id == user_b),
                    and_(ChatMessage.sender_id == user_b, ChatMessage.receiver_id == user_a),
                )
            )
            .order_by(ChatMessage.sent_at.asc(), ChatMessage.id.asc())
        )
        return await self._fetch(query)

    async def inbox(self, user_id: str) -> list[Envelope]:
        """Messages received by a user, newest first."""
        query = (
            select(ChatMessage)
            .where(ChatMessage.receiver_id == user_id)
            .order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
        )
        return await self._fetch(query)

    async def sent(self, user_id: str) -> list[Envelope]:
        """Messages sent by a user, newest first."""
        query = (
            select(ChatMessage)
            .where(ChatMessage.sender_id == user_id)
            .order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
        )
        return await self._fetch(query)

    async def mark_read(self, sender_id: str, receiver_id: str) -> int:
        """Mark every unread message from sender to receiver as read.

        Idempotent: a repeated call matches no rows and returns 0.

        Returns:
            Number of rows flipped from unread to read.
        """
        statement = (
            update(ChatMessage)
            .where(
                ChatMessage.sender_id == sender_id,
                ChatMessage.receiver_id == receiver_id,
                ChatMessage.read.is_(False),
            )
            .values(read=True)
        )
        async with self._session() as session:
            result = await session.execute(statement)
            return result.rowcount or 0

    async def _fetch(self, query) -> list[Envelope]:
        async with self._session() as session:
            result = await session.execute(query)
            return [row.to_envelope() for row in result.scalars().all()]
