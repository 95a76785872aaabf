"""jobchat client library.

Provides an HTTP client for the chat service.
"""

from jobchat.client.chat_client import ChatClient

__all__ = ["ChatClient"]
