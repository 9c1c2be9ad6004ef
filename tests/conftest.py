"""Pytest configuration and shared fixtures."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from webgen_api.interfaces import Authenticator, RemoteService
from webgen_api.models import AuthenticationResult, SessionRecord
from webgen_api.session_storage import CredentialVault

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def anyio_backend():
    """Run anyio-marked tests on asyncio, which the session core is built on."""
    return "asyncio"


@pytest.fixture(autouse=True)
def capture_debug_logs(caplog):
    """Capture package logs at DEBUG level so failures show the state transitions."""
    caplog.set_level(logging.DEBUG, logger="webgen")
    logger = logging.getLogger("webgen")
    logger.addHandler(caplog.handler)
    yield
    logger.removeHandler(caplog.handler)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_record():
    """Factory for session records issued at T0."""

    def _make(
        credential: str = "sid=abc123",
        issued_at: datetime = T0,
        lifetime: float = 3600,
        refresh_buffer: float = 300,
        identity_hint: str | None = "someone@example.com",
    ) -> SessionRecord:
        return SessionRecord(
            credential=credential,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=lifetime),
            refresh_buffer=timedelta(seconds=refresh_buffer),
            identity_hint=identity_hint,
        )

    return _make


@pytest.fixture
def auth_result():
    """Factory for authenticator results expiring relative to T0."""

    def _make(credential: str = "sid=fresh", lifetime: float = 3600, base: datetime = T0):
        return AuthenticationResult(
            credential=credential,
            expires_at=base + timedelta(seconds=lifetime),
            identity_hint="someone@example.com",
        )

    return _make


@pytest.fixture
def mock_vault() -> Mock:
    """Create a mock credential vault holding nothing."""
    vault = Mock(spec=CredentialVault)
    vault.load = AsyncMock(return_value=None)
    vault.save = AsyncMock(return_value=None)
    vault.clear = AsyncMock(return_value=None)
    return vault


@pytest.fixture
def mock_authenticator(auth_result) -> Mock:
    """Create a mock authenticator that logs in immediately and cannot refresh."""
    authenticator = Mock(spec=Authenticator)
    authenticator.authenticate = AsyncMock(return_value=auth_result())
    authenticator.refresh = AsyncMock(side_effect=NotImplementedError)
    return authenticator


@pytest.fixture
def mock_remote() -> Mock:
    """Create a mock remote service returning a fixed payload."""
    remote = Mock(spec=RemoteService)
    remote.call_generate = AsyncMock(return_value={"images": ["https://cdn.example.com/1.png"]})
    return remote


@pytest.fixture
def wait_until():
    """Async helper polling a predicate while yielding to the event loop."""

    async def _wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.001)

    return _wait
