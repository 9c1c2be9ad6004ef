"""Error taxonomy for session acquisition and generation calls."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SessionRecord


class WebGenError(Exception):
    """Base class for every error raised by this package."""


class InvalidInput(WebGenError, ValueError):
    """Raised when a prompt or generation option fails validation."""


class AuthenticationRequired(WebGenError):
    """
    No usable session could be obtained.

    Resolving it needs user interaction (a fresh login), so it is always
    surfaced to callers and never retried automatically.
    """


class AuthenticationCancelled(WebGenError):
    """The interactive authentication step was cancelled before completing."""


class RemoteServiceError(WebGenError):
    """Non-authentication failure reported by the remote service."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RateLimited(WebGenError):
    """The remote service explicitly throttled the request."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class StorageFailure(WebGenError):
    """
    The credential store could not be written.

    When raised after an acquisition, ``record`` holds the session that was
    installed in memory and is still usable for the current process.
    """

    def __init__(self, message: str, record: SessionRecord | None = None):
        super().__init__(message)
        self.record = record


class RemoteAuthError(WebGenError):
    """The remote service rejected the credential (401-class response)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
