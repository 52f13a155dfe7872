"""Error taxonomy for the coordinator.

Every failure the dispatcher reports to a client is a ``HubError``. The text
passed to the constructor is what the client sees in the ``error`` event.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class; non-fatal, reported to the initiating session."""

    @property
    def user_message(self) -> str:
        return str(self.args[0]) if self.args else "Request failed."


class AuthenticationFailure(HubError):
    """Unknown or banned identity. Terminates the connection."""

    def __init__(self, message: str, *, reason: str | None = None, banned: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.banned = banned


class PermissionDenied(HubError):
    pass


class ValidationFailure(HubError):
    pass


class NotFound(HubError):
    pass


class CollaboratorFailure(HubError):
    """Persistence or identity service error."""

    @property
    def user_message(self) -> str:
        # Store internals are logged, never shown to clients.
        return "Request failed due to a server error."


class ConflictFailure(HubError):
    """Duplicate channel name or other unique key."""
