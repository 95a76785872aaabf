"""Message ingress.

Validates a submission from an authenticated sender, stamps it with an id and
a send time, and publishes it. Success means the broker accepted the message;
persistence and live delivery happen later in the consumer.
"""

import threading
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol

from jobchat.errors import MessageValidationError
from jobchat.logging import get_logger
from jobchat.schemas.messages import (
    MAX_CONTENT_BYTES,
    Envelope,
    MessageCreate,
    is_valid_identifier,
)

logger = get_logger(__name__)

_TICK = timedelta(microseconds=1)


class Publisher(Protocol):
    async def publish(self, envelope: Envelope) -> None: ...


class MonotonicClock:
    """UTC wall clock that strictly increases within the process.

    A reading that ties with or falls behind the previous one (same
    microsecond, or the system clock stepped back) is bumped one microsecond
    past it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: datetime | None = None

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(UTC)
            if self._last is not None and current <= self._last:
                current = self._last + _TICK
            self._last = current
            return current


def validate_identifier(value: str, field: str) -> str:
    """Reject empty or malformed user/listing identifiers."""
    if not value or not value.strip():
        raise MessageValidationError(f"{field} is required", field=field)
    if not is_valid_identifier(value):
        raise MessageValidationError(f"{field} is not a valid identifier", field=field)
    return value


def validate_submission(sender_id: str, submission: MessageCreate) -> None:
    """Check a submission before anything is published.

    Raises:
        MessageValidationError: On any violated constraint.
    """
    validate_identifier(sender_id, "sender_id")
    validate_identifier(submission.receiver_id, "receiver_id")
    if submission.receiver_id == sender_id:
        raise MessageValidationError("cannot send a message to yourself", field="receiver_id")
    if submission.job_listing_id:
        validate_identifier(submission.job_listing_id, "job_listing_id")
    if not submission.content:
        raise MessageValidationError("content must not be empty", field="content")
    try:
        size = len(submission.content.encode("utf-8"))
    except UnicodeEncodeError:
        raise MessageValidationError("content must be valid UTF-8 text", field="content")
    if size > MAX_CONTENT_BYTES:
        raise MessageValidationError(
            f"content exceeds {MAX_CONTENT_BYTES} bytes",
            field="content",
        )


class MessagingService:
    """Accepts chat submissions and hands them to the broker."""

    def __init__(self, publisher: Publisher, clock: MonotonicClock | None = None):
        self._publisher = publisher
        self._clock = clock or MonotonicClock()

    async def submit(self, sender_id: str, submission: MessageCreate) -> Envelope:
        """Validate, stamp and publish a submission.

        Returns:
            The published envelope (its id and sent_at are final).

        Raises:
            MessageValidationError: Invalid input; nothing was published.
            BrokerUnavailableError: The broker did not accept the message.
        """
        validate_submission(sender_id, submission)
        envelope = Envelope(
            id=str(uuid.uuid4()),
            sender_id=sender_id,
            receiver_id=submission.receiver_id,
            job_listing_id=submission.job_listing_id or None,
            content=submission.content,
            sent_at=self._clock.now(),
            read=False,
        )
        await self._publisher.publish(envelope)
        logger.info(
            "message_accepted",
            message_id=envelope.id,
            sender_id=sender_id,
            receiver_id=envelope.receiver_id,
        )
        return envelope
