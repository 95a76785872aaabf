"""Database models for chat persistence.

One row per envelope. The primary key is the envelope id assigned at ingress,
which makes inserts idempotent under broker redelivery.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index
from sqlmodel import Column, Field, SQLModel

from jobchat.schemas.messages import Envelope, as_utc


class ChatMessage(SQLModel, table=True):
    """A persisted chat message."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_pair", "sender_id", "receiver_id"),
        {"extend_existing": True},
    )

    id: str = Field(primary_key=True)
    sender_id: str
    receiver_id: str = Field(index=True)
    job_listing_id: str | None = Field(default=None)
    content: str
    sent_at: datetime = Field(sa_column=Column(DateTime(timezone=True), index=True, nullable=False))
    read: bool = Field(default=False)

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> "ChatMessage":
        # The live path always carries read=False; a stored row starts unread.
        return cls(
            id=envelope.id,
            sender_id=envelope.sender_id,
            receiver_id=envelope.receiver_id,
            job_listing_id=envelope.job_listing_id,
            content=envelope.content,
            sent_at=envelope.sent_at,
            read=False,
        )

    def to_envelope(self) -> Envelope:
        return Envelope(
            id=self.id,
            sender_id=self.sender_id,
            receiver_id=self.receiver_id,
            job_listing_id=self.job_listing_id,
            content=self.content,
            sent_at=as_utc(self.sent_at),
            read=self.read,
        )
