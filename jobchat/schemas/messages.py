"""Chat message schemas.

``Envelope`` is the unit that flows end to end: it is published to the
broker, consumed, persisted and pushed to WebSocket receivers using the same
JSON wire format.
"""

import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

# Upper bound on message content, measured in UTF-8 bytes.
MAX_CONTENT_BYTES = 8 * 1024

# Opaque user / listing identifiers: hex object ids, UUIDs, keycloak subjects.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:@-]{0,127}$")


def is_valid_identifier(value: str) -> bool:
    """Check whether a user or listing identifier is well formed."""
    return bool(_IDENTIFIER_RE.match(value))


def as_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime.

    SQLite hands back naive datetimes; those are treated as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Envelope(BaseModel):
    """Immutable record of one chat message."""

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    receiver_id: str
    job_listing_id: str | None = None
    content: str
    sent_at: datetime
    read: bool = False

    @field_validator("job_listing_id", mode="before")
    @classmethod
    def _empty_listing_is_absent(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @field_validator("sent_at")
    @classmethod
    def _normalize_sent_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_serializer("sent_at")
    def _serialize_sent_at(self, value: datetime) -> str:
        return value.isoformat().replace("+00:00", "Z")

    def to_wire(self) -> str:
        """Serialize to the JSON wire format (empty listing id omitted)."""
        exclude = {"job_listing_id"} if self.job_listing_id is None else None
        return self.model_dump_json(exclude=exclude)

    @classmethod
    def from_wire(cls, data: str | bytes) -> "Envelope":
        """Parse an envelope from its JSON wire format.

        Raises:
            pydantic.ValidationError: If the payload is not a valid envelope.
        """
        return cls.model_validate_json(data)


class MessageCreate(BaseModel):
    """Body of ``POST /messages``; the sender comes from authentication."""

    receiver_id: str = Field(..., description="Recipient user ID")
    content: str = Field(..., description="Message text, at most 8 KiB of UTF-8")
    job_listing_id: str | None = Field(
        default=None,
        description="Optional job listing the conversation is about",
    )


class MessageAccepted(BaseModel):
    """Acknowledgement that the broker accepted a submission."""

    id: str
    sent_at: datetime

    @field_serializer("sent_at")
    def _serialize_sent_at(self, value: datetime) -> str:
        return as_utc(value).isoformat().replace("+00:00", "Z")


class MarkReadResult(BaseModel):
    """Result of marking a conversation direction as read."""

    message: str = "Messages marked as read"
    updated: int = 0
