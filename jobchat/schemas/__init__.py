"""Chat message schemas."""

from jobchat.schemas.messages import (
    MAX_CONTENT_BYTES,
    Envelope,
    MarkReadResult,
    MessageAccepted,
    MessageCreate,
)

__all__ = [
    "MAX_CONTENT_BYTES",
    "Envelope",
    "MarkReadResult",
    "MessageAccepted",
    "MessageCreate",
]
