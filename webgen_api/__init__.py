"""Session lifecycle management and rate-limited generation client for an unofficial web service."""

from .browser_session import BrowserAuthenticator
from .config import Settings
from .container import Container
from .exceptions import (
    AuthenticationCancelled,
    AuthenticationRequired,
    InvalidInput,
    RateLimited,
    RemoteAuthError,
    RemoteServiceError,
    StorageFailure,
    WebGenError,
)
from .generation_service import GenerationGateway
from .models import (
    AuthenticationResult,
    GenerationOptions,
    GenerationResult,
    SessionRecord,
    SessionState,
    SessionStatus,
)
from .remote_client import HttpGenerationRemote
from .session_manager import SessionLifecycleManager
from .session_storage import CredentialVault

__all__ = [
    "AuthenticationCancelled",
    "AuthenticationRequired",
    "AuthenticationResult",
    "BrowserAuthenticator",
    "Container",
    "CredentialVault",
    "GenerationGateway",
    "GenerationOptions",
    "GenerationResult",
    "HttpGenerationRemote",
    "InvalidInput",
    "RateLimited",
    "RemoteAuthError",
    "RemoteServiceError",
    "SessionLifecycleManager",
    "SessionRecord",
    "SessionState",
    "SessionStatus",
    "Settings",
    "StorageFailure",
    "WebGenError",
]
