"""Error taxonomy for the authorization engine.

Denied, expired and still-pending requests are states, not errors. The
exceptions here cover callers acting on the wrong request (or as the wrong
user) and failures of the polling transport itself.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backchannel.core.models.authorization import AuthorizationState


class AuthorizationError(Exception):
    """Base class for errors reported back to the caller with a stable code."""

    code = "authorization_error"

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class RequestNotFound(AuthorizationError):
    code = "not_found"

    def __init__(self, request_id: str) -> None:
        super().__init__("authorization request not found or already handled", request_id)


class Forbidden(AuthorizationError):
    code = "forbidden"

    def __init__(self, request_id: str) -> None:
        super().__init__("not authorized to act on this authorization request", request_id)


class AlreadyTerminal(AuthorizationError):
    code = "already_terminal"

    def __init__(self, request_id: str, state: AuthorizationState) -> None:
        super().__init__(f"authorization request already {state.value}", request_id)
        self.state = state


class EmptyPayload(AuthorizationError):
    code = "empty_payload"

    def __init__(self, message: str = "nothing to authorize") -> None:
        super().__init__(message)


class Unauthenticated(AuthorizationError):
    code = "unauthenticated"

    def __init__(self, message: str = "authentication required") -> None:
        super().__init__(message)


class TransientPollError(RuntimeError):
    """The status source could not be reached; the poll may be retried."""


class PollRejected(RuntimeError):
    """The status source refused the poll itself (misconfiguration, bad client)."""

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(description or error)
        self.error = error


class StoreUnavailable(TransientPollError):
    """The backing store could not be reached."""
