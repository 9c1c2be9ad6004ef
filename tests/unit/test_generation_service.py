"""Unit tests for GenerationGateway."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from webgen_api.exceptions import (
    AuthenticationRequired,
    InvalidInput,
    RateLimited,
    RemoteAuthError,
    RemoteServiceError,
    StorageFailure,
)
from webgen_api.generation_service import GenerationGateway
from webgen_api.interfaces import ISessionManager
from webgen_api.models import GenerationOptions
from webgen_api.session_manager import SessionLifecycleManager

PAYLOAD = {"images": ["https://cdn.example.com/1.png"]}


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def session(make_record):
    return make_record()


@pytest.fixture
def mock_session_manager(session) -> Mock:
    """Create a mock session manager always handing out the same record."""
    manager = Mock(spec=ISessionManager)
    manager.get_active = AsyncMock(return_value=session)
    manager.invalidate = AsyncMock(return_value=None)
    return manager


@pytest.fixture
def gateway(mock_session_manager, mock_remote, sleep):
    return GenerationGateway(
        session_manager=mock_session_manager,
        remote=mock_remote,
        min_request_interval=0,
        max_retries=3,
        retry_backoff=1.0,
        rate_limit_backoff=30.0,
        sleep=sleep,
    )


@pytest.mark.unit
@pytest.mark.anyio
class TestInputValidation:
    """Prompt and option validation happens before any session work."""

    @pytest.mark.parametrize("prompt", ["", "   \n\t ", "x" * 2001])
    async def test_invalid_prompt_is_rejected(self, gateway, mock_session_manager, mock_remote, prompt):
        """Test that blank or oversized prompts fail fast."""
        with pytest.raises(InvalidInput):
            await gateway.generate(prompt)

        mock_session_manager.get_active.assert_not_awaited()
        mock_remote.call_generate.assert_not_awaited()

    async def test_invalid_options_are_rejected(self, gateway, mock_remote):
        """Test that options outside their ranges raise InvalidInput."""
        with pytest.raises(InvalidInput):
            await gateway.generate("a red fox", {"count": 9})

        mock_remote.call_generate.assert_not_awaited()

    async def test_invalid_input_is_a_value_error(self, gateway):
        """Test that callers catching ValueError also see input errors."""
        with pytest.raises(ValueError):
            await gateway.generate("")

    async def test_prompt_is_stripped_and_options_coerced(self, gateway, mock_remote):
        """Test that a dict of options is accepted and the prompt is sent trimmed."""
        await gateway.generate("  a red fox  ", {"count": 2, "seed": 7})

        credential, prompt, options = mock_remote.call_generate.await_args.args
        assert prompt == "a red fox"
        assert options == GenerationOptions(count=2, seed=7)
        assert credential == "sid=abc123"


@pytest.mark.unit
@pytest.mark.anyio
class TestGeneration:
    """Successful calls and coalescing."""

    async def test_generate_success(self, gateway, mock_remote):
        """Test a single successful generation."""
        result = await gateway.generate("a red fox")

        assert result.data == PAYLOAD
        assert result.prompt == "a red fox"
        assert result.attempts == 1
        assert len(result.request_key) == 64
        mock_remote.call_generate.assert_awaited_once()

    async def test_identical_concurrent_requests_share_one_call(self, gateway, mock_remote):
        """Test that duplicate in-flight requests are coalesced."""

        async def slow_call(credential, prompt, options):
            await asyncio.sleep(0.01)
            return PAYLOAD

        mock_remote.call_generate.side_effect = slow_call

        first, second, third = await asyncio.gather(
            gateway.generate("a red fox"),
            gateway.generate("  a red fox"),
            gateway.generate("a red fox", GenerationOptions()),
        )

        assert mock_remote.call_generate.await_count == 1
        assert first is second is third

    async def test_distinct_requests_are_not_coalesced(self, gateway, mock_remote):
        """Test that different prompts or options each reach the remote service."""
        await asyncio.gather(
            gateway.generate("a red fox"),
            gateway.generate("a blue fox"),
            gateway.generate("a red fox", {"seed": 1}),
        )

        assert mock_remote.call_generate.await_count == 3

    async def test_sequential_identical_requests_call_again(self, gateway, mock_remote):
        """Test that coalescing only covers requests that overlap in time."""
        await gateway.generate("a red fox")
        await gateway.generate("a red fox")

        assert mock_remote.call_generate.await_count == 2

    async def test_unpersisted_session_is_used(self, gateway, mock_session_manager, mock_remote, make_record):
        """Test that a StorageFailure carrying a live record does not block generation."""
        record = make_record(credential="sid=memory-only")
        mock_session_manager.get_active.side_effect = StorageFailure("disk full", record=record)

        result = await gateway.generate("a red fox")

        assert result.data == PAYLOAD
        assert mock_remote.call_generate.await_args.args[0] == "sid=memory-only"

    async def test_storage_failure_without_record_propagates(self, gateway, mock_session_manager):
        """Test that a bare StorageFailure reaches the caller."""
        mock_session_manager.get_active.side_effect = StorageFailure("disk full")

        with pytest.raises(StorageFailure):
            await gateway.generate("a red fox")


@pytest.mark.unit
@pytest.mark.anyio
class TestAuthenticationFailures:
    """One layer of credential rejection is resolved automatically."""

    async def test_rejected_session_is_reacquired_once(
        self, gateway, mock_session_manager, mock_remote, session
    ):
        """Test invalidate-then-retry after a single auth failure."""
        mock_remote.call_generate.side_effect = [RemoteAuthError("expired", status_code=401), PAYLOAD]

        result = await gateway.generate("a red fox")

        assert result.data == PAYLOAD
        assert result.attempts == 2
        mock_session_manager.invalidate.assert_awaited_once_with(expected=session)
        assert mock_session_manager.get_active.await_count == 2

    async def test_second_rejection_requires_authentication(
        self, gateway, mock_session_manager, mock_remote
    ):
        """Test that a fresh session being rejected again is surfaced."""
        mock_remote.call_generate.side_effect = RemoteAuthError("forbidden", status_code=403)

        with pytest.raises(AuthenticationRequired):
            await gateway.generate("a red fox")

        assert mock_remote.call_generate.await_count == 2
        mock_session_manager.invalidate.assert_awaited_once()

    async def test_invalidate_storage_failure_is_tolerated(
        self, gateway, mock_session_manager, mock_remote
    ):
        """Test that failing to clear the rejected session on disk does not abort the retry."""
        mock_session_manager.invalidate.side_effect = StorageFailure("read-only filesystem")
        mock_remote.call_generate.side_effect = [RemoteAuthError("expired"), PAYLOAD]

        result = await gateway.generate("a red fox")

        assert result.data == PAYLOAD

    async def test_reacquisition_through_real_manager(
        self, mock_vault, mock_authenticator, mock_remote, clock, sleep
    ):
        """Test that a rejected credential leads to exactly one new login."""
        manager = SessionLifecycleManager(
            vault=mock_vault,
            authenticator=mock_authenticator,
            refresh_buffer=timedelta(seconds=300),
            clock=clock,
            sleep=sleep,
        )
        gateway = GenerationGateway(manager, mock_remote, min_request_interval=0, sleep=sleep)
        mock_remote.call_generate.side_effect = [RemoteAuthError("expired"), PAYLOAD]

        result = await gateway.generate("a red fox")

        assert result.data == PAYLOAD
        assert mock_authenticator.authenticate.await_count == 2
        mock_vault.clear.assert_awaited_once()
        await manager.close()


@pytest.mark.unit
@pytest.mark.anyio
class TestRetries:
    """Throttling and transient server errors are retried with backoff."""

    async def test_rate_limit_honours_retry_after(self, gateway, mock_remote, sleep):
        """Test that the server's retry hint is used as the delay."""
        mock_remote.call_generate.side_effect = [RateLimited("slow down", retry_after=7.5), PAYLOAD]

        result = await gateway.generate("a red fox")

        assert result.attempts == 2
        sleep.assert_awaited_once_with(7.5)

    async def test_rate_limit_without_hint_uses_default_backoff(self, gateway, mock_remote, sleep):
        """Test the fallback delay for a 429 without Retry-After."""
        mock_remote.call_generate.side_effect = [RateLimited("slow down"), PAYLOAD]

        await gateway.generate("a red fox")

        sleep.assert_awaited_once_with(30.0)

    async def test_persistent_rate_limit_is_raised(self, mock_session_manager, mock_remote, sleep):
        """Test that throttling past the retry budget reaches the caller."""
        gateway = GenerationGateway(
            mock_session_manager, mock_remote, min_request_interval=0, max_retries=2, sleep=sleep
        )
        mock_remote.call_generate.side_effect = RateLimited("slow down", retry_after=1.0)

        with pytest.raises(RateLimited):
            await gateway.generate("a red fox")

        assert mock_remote.call_generate.await_count == 3
        assert sleep.await_count == 2

    async def test_server_errors_back_off_exponentially(self, gateway, mock_remote, sleep):
        """Test retryable 5xx responses with doubling delays."""
        mock_remote.call_generate.side_effect = [
            RemoteServiceError("bad gateway", status_code=502),
            RemoteServiceError("unavailable", status_code=503),
            PAYLOAD,
        ]

        result = await gateway.generate("a red fox")

        assert result.attempts == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    async def test_non_retryable_error_is_raised_immediately(self, gateway, mock_remote, sleep):
        """Test that a rejected request is not retried."""
        mock_remote.call_generate.side_effect = RemoteServiceError(
            "bad request", status_code=400, retryable=False
        )

        with pytest.raises(RemoteServiceError) as exc_info:
            await gateway.generate("a red fox")

        assert exc_info.value.status_code == 400
        mock_remote.call_generate.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_retries_respect_pacing(self, mock_session_manager, mock_remote):
        """Test that every attempt, including retries, waits for a pacing slot."""
        pacer = Mock()
        pacer.wait_turn = AsyncMock(return_value=0.0)
        gateway = GenerationGateway(
            mock_session_manager, mock_remote, sleep=AsyncMock(), pacer=pacer
        )
        mock_remote.call_generate.side_effect = [RemoteServiceError("unavailable", 503), PAYLOAD]

        await gateway.generate("a red fox")

        assert pacer.wait_turn.await_count == 2
