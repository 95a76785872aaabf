"""Database module for chat message persistence."""

from jobchat.db.engine import close_db, get_session, init_db
from jobchat.db.models import ChatMessage
from jobchat.db.store import MessageStore

__all__ = [
    "ChatMessage",
    "MessageStore",
    "close_db",
    "get_session",
    "init_db",
]
