from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class AuthenticationRequired(Exception):
    """No usable token for a provider; an interactive authorization is needed."""

    def __init__(self, provider: Optional[str] = None, message: str = "Authentication required") -> None:
        super().__init__(message)
        self.provider = provider


class AuthorizationDenied(Exception):
    """Provider explicitly rejected the request (denied consent, invalid grant, forbidden)."""

    def __init__(self, message: str = "Authorization denied", error: Any = None) -> None:
        super().__init__(message)
        self.error = error


class RemoteUnavailable(Exception):
    """Transport or provider failure. Retrying may succeed."""


class RateLimited(RemoteUnavailable):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class NotFound(Exception):
    """Requested resource was not found."""


class Conflict(Exception):
    """Concurrent write to the ratings store. Reserved, nothing raises it yet."""


class ErrorKind(str, Enum):
    """Error categories exposed to the presentation layer through SyncState."""

    AUTHENTICATION_REQUIRED = "authentication_required"
    AUTHORIZATION_DENIED = "authorization_denied"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


def error_kind_for(error: BaseException) -> ErrorKind:
    """Map an exception raised by a collaborator to its ErrorKind."""
    if isinstance(error, AuthenticationRequired):
        return ErrorKind.AUTHENTICATION_REQUIRED
    if isinstance(error, AuthorizationDenied):
        return ErrorKind.AUTHORIZATION_DENIED
    if isinstance(error, NotFound):
        return ErrorKind.NOT_FOUND
    if isinstance(error, Conflict):
        return ErrorKind.CONFLICT
    return ErrorKind.REMOTE_UNAVAILABLE
