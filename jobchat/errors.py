"""Exception types shared by the chat pipeline."""


class ChatError(Exception):
    """Base exception for chat pipeline errors."""

    pass


class MessageValidationError(ChatError):
    """A submission or identifier failed validation (client error)."""

    def __init__(self, detail: str, field: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field


class BrokerUnavailableError(ChatError):
    """The broker could not be reached or did not confirm a publish."""

    pass


class BrokerClosedError(BrokerUnavailableError):
    """The broker adapter was shut down and will not reconnect."""

    pass


class StoreError(ChatError):
    """The message store failed to complete an operation."""

    pass


class AuthenticationError(ChatError):
    """No valid identity could be derived from the request."""

    pass


class AuthorizationError(ChatError):
    """The identity lacks a role required by the endpoint."""

    pass
