"""
Generation service with dependency injection.

Wraps the remote generation call: validates input, obtains a session from the
lifecycle manager, applies admission control, resolves one layer of
authentication failure (invalidate, re-acquire, retry once) and retries
throttling and transient server errors with bounded backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from .admission import RequestCoalescer, RequestPacer, request_key
from .exceptions import (
    AuthenticationRequired,
    InvalidInput,
    RateLimited,
    RemoteAuthError,
    RemoteServiceError,
    StorageFailure,
)
from .interfaces import ISessionManager, RemoteService
from .logger import logger
from .models import GenerationOptions, GenerationResult, SessionRecord
from .utils import MAX_PROMPT_LENGTH, backoff_delay, validate_prompt


class GenerationGateway:
    """Single entry point for remote generation calls."""

    def __init__(
        self,
        session_manager: ISessionManager,
        remote: RemoteService,
        min_request_interval: float = 2.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        rate_limit_backoff: float = 30.0,
        max_prompt_length: int = MAX_PROMPT_LENGTH,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pacer: RequestPacer | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            session_manager: Source of valid sessions
            remote: Remote generation endpoint
            min_request_interval: Minimum seconds between distinct remote calls
            max_retries: Retries for rate limiting and retryable server errors
            retry_backoff: Base delay for server-error backoff
            rate_limit_backoff: Delay used when a throttle carries no retry hint
            max_prompt_length: Longest accepted prompt
            sleep: Coroutine used for backoff waits
            pacer: Request pacer, shared between gateways of one service
        """
        self.session_manager = session_manager
        self.remote = remote
        self._max_retries = max(0, max_retries)
        self._retry_backoff = retry_backoff
        self._rate_limit_backoff = rate_limit_backoff
        self._max_prompt_length = max_prompt_length
        self._sleep = sleep
        self._pacer = pacer or RequestPacer(min_request_interval, sleep=sleep)
        self._coalescer = RequestCoalescer()

    async def generate(
        self, prompt: str, options: GenerationOptions | dict[str, Any] | None = None
    ) -> GenerationResult:
        """
        Generate content for a prompt.

        Identical concurrent requests share one remote call and one result.

        Raises:
            InvalidInput: If the prompt or options are invalid
            AuthenticationRequired: If the credential is rejected again after re-acquisition
            RemoteServiceError: If the remote call keeps failing
            RateLimited: If throttling persists past the retry budget
        """
        cleaned = validate_prompt(prompt, self._max_prompt_length)
        opts = self._coerce_options(options)
        key = request_key(cleaned, opts)
        return await self._coalescer.run(key, lambda: self._execute(key, cleaned, opts))

    @staticmethod
    def _coerce_options(options: GenerationOptions | dict[str, Any] | None) -> GenerationOptions:
        if options is None:
            return GenerationOptions()
        if isinstance(options, GenerationOptions):
            return options
        try:
            return GenerationOptions.model_validate(options)
        except ValidationError as e:
            raise InvalidInput(f"Invalid generation options: {e}") from e

    async def _active_session(self) -> SessionRecord:
        try:
            return await self.session_manager.get_active()
        except StorageFailure as e:
            if e.record is None:
                raise
            logger.warning(f"Continuing with unpersisted session: {e}")
            return e.record

    async def _execute(self, key: str, prompt: str, options: GenerationOptions) -> GenerationResult:
        attempts = 0
        retries = 0
        reauthenticated = False

        while True:
            session = await self._active_session()
            await self._pacer.wait_turn()
            attempts += 1
            try:
                data = await self.remote.call_generate(
                    session.credential.get_secret_value(), prompt, options
                )
            except RemoteAuthError as e:
                if reauthenticated:
                    logger.error(f"Credential rejected again after re-authentication: {e}")
                    raise AuthenticationRequired(
                        "Remote service rejected a freshly acquired session"
                    ) from e
                reauthenticated = True
                logger.info("Remote service rejected the session, re-acquiring")
                try:
                    await self.session_manager.invalidate(expected=session)
                except StorageFailure as storage_error:
                    # In-memory state is already reset; only the stale copy on disk remains
                    logger.warning(f"Could not clear rejected session from storage: {storage_error}")
                continue
            except RateLimited as e:
                if retries >= self._max_retries:
                    logger.error(f"Still rate limited after {retries} retries")
                    raise
                delay = e.retry_after if e.retry_after is not None else self._rate_limit_backoff
                logger.warning(f"Rate limited, retry {retries + 1}/{self._max_retries} in {delay}s")
            except RemoteServiceError as e:
                if not e.retryable or retries >= self._max_retries:
                    raise
                delay = backoff_delay(retries, self._retry_backoff)
                logger.warning(
                    f"Remote service error ({e}), retry {retries + 1}/{self._max_retries} in {delay}s"
                )
            else:
                logger.info(f"Generation {key[:12]} completed after {attempts} call(s)")
                return GenerationResult(request_key=key, prompt=prompt, data=data, attempts=attempts)

            retries += 1
            await self._sleep(delay)
