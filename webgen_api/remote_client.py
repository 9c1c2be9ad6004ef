"""HTTP implementation of the RemoteService boundary."""

from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from .exceptions import RateLimited, RemoteAuthError, RemoteServiceError
from .logger import logger
from .models import GenerationOptions, utcnow

AUTH_STATUS_CODES = {401, 403}


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - utcnow()).total_seconds())


class HttpGenerationRemote:
    """
    Calls a JSON generation endpoint, presenting the session credential either
    as a Cookie header (browser session) or as a bearer token.
    """

    def __init__(
        self,
        endpoint: str,
        credential_style: str = "cookie",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if credential_style not in ("cookie", "bearer"):
            raise ValueError("credential_style must be 'cookie' or 'bearer'")
        self.endpoint = endpoint
        self.credential_style = credential_style
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _auth_headers(self, credential: str) -> dict[str, str]:
        if self.credential_style == "bearer":
            return {"Authorization": f"Bearer {credential}"}
        return {"Cookie": credential}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: dict[str, Any] = {"follow_redirects": True, "timeout": self._timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def call_generate(
        self, credential: str, prompt: str, options: GenerationOptions
    ) -> Any:
        """
        POST the prompt and options, returning the decoded JSON body.

        Raises:
            RemoteAuthError: On 401/403
            RateLimited: On 429
            RemoteServiceError: On other failures (5xx and transport errors are retryable)
        """
        payload = {"prompt": prompt, "options": options.model_dump(mode="json", exclude_none=True)}
        try:
            response = await self._get_client().post(
                self.endpoint, json=payload, headers=self._auth_headers(credential)
            )
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"Request to generation endpoint failed: {e}") from e

        status = response.status_code
        if status in AUTH_STATUS_CODES:
            raise RemoteAuthError(f"Session rejected (HTTP {status})", status_code=status)
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimited("Rate limited (HTTP 429)", retry_after=retry_after)
        if status >= 500:
            raise RemoteServiceError(f"Server error (HTTP {status})", status_code=status)
        if status >= 400:
            raise RemoteServiceError(
                f"Request rejected (HTTP {status})", status_code=status, retryable=False
            )

        try:
            return response.json()
        except ValueError as e:
            logger.debug(f"Unparseable generation response: {response.text[:200]}")
            raise RemoteServiceError(
                "Generation endpoint returned invalid JSON", status_code=status
            ) from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
