"""Error taxonomy for the chat core.

Only ``AuthError`` is fatal, and only while a connection is being established.
Everything else is reported to the client as an ERROR frame and the connection
stays open.
"""
from constants import WS_CLOSE_INVALID_TOKEN, WS_CLOSE_UNAUTHENTICATED


class ChatError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class AuthError(ChatError):
    code = "AUTH_ERROR"
    close_code = WS_CLOSE_INVALID_TOKEN


class Unauthenticated(AuthError):
    code = "UNAUTHENTICATED"
    close_code = WS_CLOSE_UNAUTHENTICATED

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InvalidToken(AuthError):
    code = "INVALID_TOKEN"

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class ValidationError(ChatError):
    """Bad frame or payload."""

    code = "VALIDATION_ERROR"


class AuthorizationError(ChatError):
    """Sender is not allowed to do this (blocked, not a room member)."""

    code = "FORBIDDEN"


class DependencyError(ChatError):
    code = "DEPENDENCY_ERROR"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class StoreUnavailable(DependencyError):
    code = "STORE_UNAVAILABLE"
