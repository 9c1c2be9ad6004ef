"""Interfaces and protocols for dependency injection."""

from typing import Any, Protocol

from .models import AuthenticationResult, GenerationOptions, SessionRecord, SessionStatus


class Authenticator(Protocol):
    """Produces fresh credentials. Opaque to the session core."""

    async def authenticate(self) -> AuthenticationResult:
        """Run the (possibly interactive) login flow."""
        ...

    async def refresh(self, credential: str) -> AuthenticationResult:
        """
        Silently exchange an existing credential for a new one.

        Raises NotImplementedError when the service offers no silent refresh,
        and AuthenticationRequired when the remote side demands re-consent.
        """
        ...


class RemoteService(Protocol):
    """The third-party generation endpoint."""

    async def call_generate(
        self, credential: str, prompt: str, options: GenerationOptions
    ) -> Any:
        """
        Issue one generation call.

        Raises RemoteAuthError, RateLimited or RemoteServiceError.
        """
        ...


class ISessionManager(Protocol):
    """Protocol for session management."""

    async def get_active(self) -> SessionRecord:
        """Return a non-expired session, acquiring one if needed."""
        ...

    async def invalidate(self, expected: SessionRecord | None = None) -> None:
        """Drop the active session and its persisted copy."""
        ...

    def status(self) -> SessionStatus:
        """Diagnostic snapshot of the session."""
        ...
