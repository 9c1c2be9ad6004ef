"""
Session lifecycle management.

Owns the in-memory session state machine (EMPTY -> ACQUIRING -> VALID ->
REFRESHING -> VALID | EMPTY), persists every installed record through the
CredentialVault, and keeps a single cancellable timer that refreshes the
session shortly before it expires. All acquisitions are single-flight: callers
arriving while one is running await that same attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from pydantic import ValidationError

from .exceptions import (
    AuthenticationCancelled,
    AuthenticationRequired,
    StorageFailure,
    WebGenError,
)
from .interfaces import Authenticator
from .logger import logger
from .models import (
    DEFAULT_REFRESH_BUFFER,
    AuthenticationResult,
    SessionRecord,
    SessionState,
    SessionStatus,
    utcnow,
)
from .session_storage import CredentialVault
from .utils import backoff_delay

StateListener = Callable[[SessionState], None]


class _SessionSuperseded(WebGenError):
    """Internal: the attempt was dropped by invalidate(); waiters start a new one."""


class _Acquisition:
    """One shared acquisition attempt and the reason it was aborted, if any."""

    def __init__(self, epoch: int):
        self.epoch = epoch
        self.task: asyncio.Task | None = None
        self.abort_error: WebGenError | None = None


class SessionLifecycleManager:
    """Manages acquisition, persistence and proactive refresh of one session."""

    def __init__(
        self,
        vault: CredentialVault,
        authenticator: Authenticator,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        refresh_max_attempts: int = 3,
        refresh_backoff: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            vault: Encrypted store for the session record
            authenticator: Source of fresh credentials
            refresh_buffer: Lead time before expiry at which refresh begins
            refresh_max_attempts: Silent refresh attempts before full re-authentication
            refresh_backoff: Base delay in seconds between refresh attempts
            clock: Returns the current aware UTC time
            sleep: Coroutine used for backoff waits
        """
        self._vault = vault
        self._authenticator = authenticator
        self._refresh_buffer = refresh_buffer
        self._refresh_max_attempts = max(1, refresh_max_attempts)
        self._refresh_backoff = refresh_backoff
        self._clock = clock
        self._sleep = sleep

        self._state = SessionState.EMPTY
        self._record: SessionRecord | None = None
        self._restored = False
        self._closed = False
        # Bumped whenever the current attempt is abandoned; stale attempts must
        # not touch state once it changes.
        self._epoch = 0
        self._inflight: _Acquisition | None = None
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._timer_task: asyncio.Task | None = None
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with the new state on every transition."""
        self._listeners.append(listener)

    def status(self) -> SessionStatus:
        """Diagnostic snapshot of the current session."""
        record = self._record
        if record is None:
            return SessionStatus(state=self._state)
        return SessionStatus(
            state=self._state,
            identity_hint=record.identity_hint,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            refresh_at=record.refresh_at,
        )

    async def acquire(self) -> SessionRecord:
        """
        Return a valid session, acquiring or refreshing one if needed.

        Returns immediately when the active record is outside its refresh
        buffer. Otherwise joins (or starts) the single in-flight acquisition.

        Raises:
            AuthenticationRequired: If neither refresh nor authentication succeeded
            AuthenticationCancelled: If the interactive step was cancelled
            StorageFailure: If the new record could not be persisted; the
                record is still active in memory and available as ``exc.record``
        """
        while True:
            if self._closed:
                raise AuthenticationCancelled("Session manager is closed")
            record = self._usable_record()
            if record is not None:
                return record

            attempt = self._inflight or self._start_acquisition()
            try:
                return await self._wait(attempt)
            except _SessionSuperseded:
                logger.debug("Acquisition superseded by invalidation, starting over")

    async def get_active(self) -> SessionRecord:
        """Same as acquire(): a non-expired record, or an error."""
        return await self.acquire()

    async def invalidate(self, expected: SessionRecord | None = None) -> None:
        """
        Drop the session: state becomes EMPTY, the refresh timer is cancelled,
        any in-flight attempt is abandoned and the vault is cleared.

        Args:
            expected: When given, only invalidate if this is still the active
                record. Lets parallel callers that saw the same rejected
                credential trigger a single re-acquisition.
        """
        if expected is not None and self._record != expected:
            logger.debug("Session already replaced, skipping invalidation")
            return

        self._epoch += 1
        self._abort_inflight(_SessionSuperseded("Session was invalidated"))
        self._cancel_refresh_timer()
        self._cancel_timer_task()
        self._record = None
        self._restored = True
        self._set_state(SessionState.EMPTY)
        await self._vault.clear()
        logger.info("Session invalidated")

    async def logout(self) -> None:
        """Forget the session and delete its persisted copy."""
        await self.invalidate()

    def cancel_acquisition(self) -> bool:
        """
        Cancel the in-flight acquisition, e.g. because the user closed the
        login window. Every waiter receives AuthenticationCancelled.

        Returns:
            True if an attempt was cancelled
        """
        if self._inflight is None:
            return False

        self._epoch += 1
        self._abort_inflight(AuthenticationCancelled("Authentication was cancelled"))
        self._cancel_refresh_timer()
        self._record = None
        # The stored record is kept; reload it next time to seed a refresh
        self._restored = False
        self._set_state(SessionState.EMPTY)
        logger.info("Session acquisition cancelled")
        return True

    async def check_refresh(self, now: datetime | None = None) -> bool:
        """
        Refresh the session if it has entered its refresh buffer.

        If an acquisition is already running it is awaited instead and no
        second attempt is started.

        Returns:
            True if this call started a refresh
        """
        if self._inflight is not None:
            try:
                await self._wait(self._inflight)
            except _SessionSuperseded:
                pass
            return False

        record = self._record
        if record is None or self._state is not SessionState.VALID:
            return False

        if not record.needs_refresh(now or self._clock()):
            if self._refresh_handle is None:
                self._arm_refresh_timer(record)
            return False

        attempt = self._start_acquisition()
        try:
            await self._wait(attempt)
        except _SessionSuperseded:
            return False
        return True

    async def close(self) -> None:
        """Cancel the refresh timer and any in-flight work. Used on shutdown."""
        self._closed = True
        self._epoch += 1
        self._cancel_refresh_timer()

        pending = []
        if self._inflight is not None:
            pending.append(self._inflight.task)
            self._abort_inflight(AuthenticationCancelled("Session manager is closed"))
        if self._timer_task is not None and not self._timer_task.done():
            pending.append(self._timer_task)
            self._timer_task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug("Session manager closed")

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def _usable_record(self) -> SessionRecord | None:
        record = self._record
        if (
            self._state is SessionState.VALID
            and record is not None
            and not record.needs_refresh(self._clock())
        ):
            return record
        return None

    def _is_current(self, attempt: _Acquisition) -> bool:
        return attempt.epoch == self._epoch

    def _start_acquisition(self) -> _Acquisition:
        attempt = _Acquisition(self._epoch)
        attempt.task = asyncio.create_task(self._run_acquisition(attempt))
        attempt.task.add_done_callback(self._consume_result)
        self._inflight = attempt
        return attempt

    @staticmethod
    async def _wait(attempt: _Acquisition) -> SessionRecord:
        try:
            return await asyncio.shield(attempt.task)
        except asyncio.CancelledError:
            # An attempt aborted before it started running ends cancelled
            # rather than with its abort error.
            if attempt.task.cancelled() and attempt.abort_error is not None:
                raise attempt.abort_error from None
            raise

    @staticmethod
    def _consume_result(task: asyncio.Task) -> None:
        # Waiters receive the outcome through shield(); mark it retrieved here
        # so attempts nobody awaited do not warn at garbage collection.
        if not task.cancelled():
            task.exception()

    def _abort_inflight(self, error: WebGenError) -> None:
        attempt = self._inflight
        if attempt is None:
            return
        self._inflight = None
        attempt.abort_error = error
        attempt.task.cancel()

    async def _run_acquisition(self, attempt: _Acquisition) -> SessionRecord:
        try:
            return await self._acquire_record(attempt)
        except asyncio.CancelledError:
            if attempt.abort_error is not None:
                raise attempt.abort_error from None
            self._reset(attempt)
            raise
        except (StorageFailure, _SessionSuperseded):
            raise
        except AuthenticationCancelled:
            self._reset(attempt)
            logger.info("Authentication cancelled by the user")
            raise
        except Exception as e:
            if not self._is_current(attempt):
                raise
            self._reset(attempt)
            await self._discard_stored_session()
            logger.error(f"Session acquisition failed: {e}")
            if isinstance(e, AuthenticationRequired):
                raise
            raise AuthenticationRequired(f"Authentication failed: {e}") from e
        finally:
            if self._inflight is attempt:
                self._inflight = None

    async def _acquire_record(self, attempt: _Acquisition) -> SessionRecord:
        previous = self._record
        if not self._restored:
            self._restored = True
            stored = await self._vault.load()
            self._ensure_current(attempt)
            if stored is not None:
                stored = stored.model_copy(update={"refresh_buffer": self._refresh_buffer})
                if not stored.needs_refresh(self._clock()):
                    logger.info(f"Restored session for {stored.identity_hint or 'unknown identity'}")
                    self._install(stored)
                    return stored
                previous = previous or stored

        record: SessionRecord | None = None
        if previous is not None:
            self._set_state(SessionState.REFRESHING)
            record = await self._try_refresh(previous)
            self._ensure_current(attempt)

        if record is None:
            self._set_state(SessionState.ACQUIRING)
            logger.info("Starting authentication")
            result = await self._authenticator.authenticate()
            self._ensure_current(attempt)
            record = self._build_record(result, previous)

        self._install(record)
        logger.info(
            f"Session acquired for {record.identity_hint or 'unknown identity'}, "
            f"expires at {record.expires_at.isoformat()}"
        )

        try:
            await self._vault.save(record)
        except StorageFailure as e:
            logger.warning(f"Session is active in memory only: {e}")
            if e.record is None:
                e.record = record
            raise
        return record

    def _build_record(
        self, result: AuthenticationResult, previous: SessionRecord | None
    ) -> SessionRecord:
        return SessionRecord.from_authentication(
            result,
            issued_at=self._clock(),
            refresh_buffer=self._refresh_buffer,
            identity_hint=previous.identity_hint if previous else None,
        )

    async def _try_refresh(self, previous: SessionRecord) -> SessionRecord | None:
        """Silent refresh with bounded exponential backoff. None means fall back to authenticate()."""
        refresh = getattr(self._authenticator, "refresh", None)
        if refresh is None:
            return None

        credential = previous.credential.get_secret_value()
        for attempt_no in range(self._refresh_max_attempts):
            try:
                return self._build_record(await refresh(credential), previous)
            except NotImplementedError:
                logger.debug("Authenticator has no silent refresh")
                return None
            except AuthenticationRequired as e:
                logger.info(f"Refresh needs interactive re-consent: {e}")
                return None
            except ValidationError as e:
                logger.warning(f"Refresh returned an unusable credential: {e.error_count()} errors")
                return None
            except Exception as e:
                if attempt_no + 1 >= self._refresh_max_attempts:
                    logger.warning(
                        f"Session refresh failed after {self._refresh_max_attempts} attempts: {e}"
                    )
                    return None
                delay = backoff_delay(attempt_no, self._refresh_backoff)
                logger.warning(
                    f"Session refresh failed: {e}, retry "
                    f"{attempt_no + 1}/{self._refresh_max_attempts} in {delay}s"
                )
                await self._sleep(delay)
        return None

    def _ensure_current(self, attempt: _Acquisition) -> None:
        if not self._is_current(attempt):
            raise attempt.abort_error or _SessionSuperseded("Session was invalidated")

    def _install(self, record: SessionRecord) -> None:
        self._record = record
        self._set_state(SessionState.VALID)
        self._arm_refresh_timer(record)

    def _reset(self, attempt: _Acquisition) -> None:
        if not self._is_current(attempt):
            return
        self._cancel_refresh_timer()
        self._record = None
        self._set_state(SessionState.EMPTY)

    async def _discard_stored_session(self) -> None:
        try:
            await self._vault.clear()
        except StorageFailure as e:
            logger.warning(f"Could not remove rejected session from storage: {e}")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session state listener failed")

    # ------------------------------------------------------------------
    # Refresh timer
    # ------------------------------------------------------------------

    def _arm_refresh_timer(self, record: SessionRecord) -> None:
        self._cancel_refresh_timer()
        delay = max(0.0, (record.refresh_at - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._refresh_handle = loop.call_later(delay, self._on_refresh_timer)
        logger.debug(f"Proactive refresh scheduled in {delay:.0f}s")

    def _cancel_refresh_timer(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def _cancel_timer_task(self) -> None:
        task = self._timer_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._timer_task = None

    def _on_refresh_timer(self) -> None:
        self._refresh_handle = None
        self._timer_task = asyncio.ensure_future(self._scheduled_refresh())

    async def _scheduled_refresh(self) -> None:
        try:
            await self.check_refresh()
        except StorageFailure as e:
            logger.warning(f"Refreshed session could not be persisted: {e}")
        except (AuthenticationRequired, AuthenticationCancelled) as e:
            logger.error(f"Scheduled session refresh failed, login required: {e}")
