import asyncio
import webbrowser
from collections.abc import Awaitable, Callable
from datetime import datetime

from .exceptions import AuthenticationCancelled, AuthenticationRequired
from .logger import logger
from .models import AuthenticationResult

Refresher = Callable[[str], Awaitable[AuthenticationResult]]


class BrowserAuthenticator:
    """
    Authenticator that opens the service's login page in the user's browser and
    waits for the host application to hand back the captured credential.

    The host (whatever embeds the login surface or watches the cookie jar)
    calls complete() once the user has logged in, or cancel() when the user
    gives up.
    """

    def __init__(
        self,
        login_url: str,
        timeout: float = 300.0,
        refresher: Refresher | None = None,
        open_browser: bool = True,
        fn_print: Callable[[str], None] = logger.info,
    ):
        """
        :param login_url: Page where the user signs in
        :param timeout: Seconds to wait for the login to complete
        :param refresher: Optional coroutine exchanging a credential for a new one
        :param open_browser: Open login_url automatically
        :param fn_print: The function to display additional information
        """
        if not login_url.startswith("http"):
            login_url = "https://" + login_url
        self.login_url = login_url
        self.timeout = timeout
        self._refresher = refresher
        self._open_browser = open_browser
        self._fn_print = fn_print
        self._pending: asyncio.Future | None = None

    @property
    def pending(self) -> bool:
        """True while a login is waiting for completion."""
        return self._pending is not None and not self._pending.done()

    async def authenticate(self) -> AuthenticationResult:
        """
        Start a login and wait for complete() or cancel().

        :raises AuthenticationCancelled: If cancel() is called or the wait is cancelled
        :raises AuthenticationRequired: If the login takes longer than the timeout
        """
        if self.pending:
            raise RuntimeError("A login is already in progress")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending = future

        text = "Opening browser for login. The request will expire in {0} seconds"
        self._fn_print(text.format(int(self.timeout)))
        if self._open_browser:
            # Try to open browser, but continue even if it fails
            try:
                webbrowser.open(self.login_url)
            except Exception as e:
                self._fn_print(f"Warning: Could not open browser automatically: {e}")
                self._fn_print(f"Please visit this URL manually: {self.login_url}")

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise AuthenticationRequired(
                f"Login timed out after {self.timeout} seconds. Please try again."
            ) from e
        finally:
            if self._pending is future:
                self._pending = None

    def complete(
        self, credential: str, expires_at: datetime, identity_hint: str | None = None
    ) -> bool:
        """
        Deliver the credential captured from the login surface.

        :return: False if no login was waiting
        """
        if not self.pending:
            return False
        self._pending.set_result(
            AuthenticationResult(
                credential=credential, expires_at=expires_at, identity_hint=identity_hint
            )
        )
        return True

    def cancel(self, reason: str = "Login window was closed") -> bool:
        """
        Abort the waiting login.

        :return: False if no login was waiting
        """
        if not self.pending:
            return False
        self._pending.set_exception(AuthenticationCancelled(reason))
        return True

    async def refresh(self, credential: str) -> AuthenticationResult:
        """Silent refresh through the configured refresher."""
        if self._refresher is None:
            raise NotImplementedError("No silent refresh configured")
        return await self._refresher(credential)
