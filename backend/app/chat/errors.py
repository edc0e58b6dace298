"""Error taxonomy for the chat relay.

Every error carries a stable ``code`` that is sent to the originating
connection inside an ``error`` event. None of these ever reach other
connections.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for relay errors reported back to a single connection."""

    code: str = "chat_error"

    def __init__(self, message: str, *, client_token: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.client_token = client_token

    def to_event(self) -> dict:
        event = {"type": "error", "code": self.code, "error": self.message}
        if self.client_token:
            event["clientToken"] = self.client_token
        return event


class ValidationError(ChatError):
    """Bad or missing ids, empty or oversized text, malformed events."""
    code = "validation_error"


class NotJoinedError(ChatError):
    """A message was sent for a room the connection has not joined."""
    code = "not_joined"


class PersistenceError(ChatError):
    """The message store rejected a write; nothing was fanned out."""
    code = "delivery_failed"


class NotFoundError(ChatError):
    """The referenced business does not exist."""
    code = "not_found"


class PermissionDeniedError(ChatError):
    """An owner tried to act on a business they do not own."""
    code = "forbidden"


class UnauthenticatedError(ChatError):
    """Connection credentials could not be resolved to an identity."""
    code = "unauthenticated"
