"""Dependency injection container using IoC pattern."""

from .config import Settings
from .generation_service import GenerationGateway
from .interfaces import Authenticator, RemoteService
from .logger import logger, setup_logger
from .session_manager import SessionLifecycleManager
from .session_storage import CredentialVault


class Container:
    """
    Wires vault, lifecycle manager and gateway for one account.

    Each instance owns its own session; construct one per account instead of
    sharing module-level singletons.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        remote: RemoteService,
        settings: Settings | None = None,
    ):
        self.settings = settings or Settings()
        self.authenticator = authenticator
        self.remote = remote
        self._credential_vault: CredentialVault | None = None
        self._session_manager: SessionLifecycleManager | None = None
        self._generation_gateway: GenerationGateway | None = None
        setup_logger(level=self.settings.log_level_value)

    @property
    def credential_vault(self) -> CredentialVault:
        """Get CredentialVault instance (created on first use)."""
        if self._credential_vault is None:
            directory = self.settings.ensure_storage_dir()
            self._credential_vault = CredentialVault(
                directory=str(directory), encryption_key=self.settings.storage_encryption_key
            )
        return self._credential_vault

    @property
    def session_manager(self) -> SessionLifecycleManager:
        """Get SessionLifecycleManager instance (created on first use)."""
        if self._session_manager is None:
            self._session_manager = SessionLifecycleManager(
                vault=self.credential_vault,
                authenticator=self.authenticator,
                refresh_buffer=self.settings.refresh_buffer,
                refresh_max_attempts=self.settings.refresh_max_attempts,
                refresh_backoff=self.settings.refresh_backoff_seconds,
            )
        return self._session_manager

    @property
    def generation_gateway(self) -> GenerationGateway:
        """Get GenerationGateway instance (created on first use)."""
        if self._generation_gateway is None:
            self._generation_gateway = GenerationGateway(
                session_manager=self.session_manager,
                remote=self.remote,
                min_request_interval=self.settings.min_request_interval,
                max_retries=self.settings.max_retries,
                retry_backoff=self.settings.retry_backoff_seconds,
                rate_limit_backoff=self.settings.rate_limit_backoff_seconds,
                max_prompt_length=self.settings.max_prompt_length,
            )
        return self._generation_gateway

    async def aclose(self) -> None:
        """Stop timers and release the remote client."""
        if self._session_manager is not None:
            await self._session_manager.close()
        close_remote = getattr(self.remote, "aclose", None)
        if close_remote is not None:
            await close_remote()
        logger.debug("Container closed")
