"""OAuth2 Authorization Code provider.

``OAuth2Provider`` owns the login state machine:

- ``login()`` restores stored credentials and refreshes them, or runs the
  platform login flow when there are none.
- ``logout()`` cancels a pending attempt, discards the client and clears
  the stored credentials. Tokens are not revoked at the server.
- ``state`` reports an expired session as not logged in and starts the
  refresh-or-logout handler in the background.

The provider is bound to the event loop ``login()`` first runs on. Only
one caller is expected to drive login and logout at a time; a login
started while another is in flight cancels the first one and waits for
it to unwind.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import time

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import AuthenticationError, StorageError, TokenRefreshError
from ..service import AuthController, AuthProvider, ResourceT, UserT
from ..sync_helpers import spawn_background
from ..types import Credentials, LoginState
from .credentials_store import CredentialStore, SecureCredentialStore
from .flow import LoginFlow, LoginFlowListener, resolve_platform, select_login_flow
from .grant import AuthorizationCodeGrant, OAuth2Client
from .operation import LoginOperation
from .storage import create_secure_storage


if TYPE_CHECKING:
    from ..config import AuthSettings


class OAuth2Provider(AuthProvider[UserT, ResourceT]):
    """Auth provider implementing the OAuth2 Authorization Code flow.

    Parameters
    ----------
    settings : AuthSettings
        Auth configuration. Endpoints and client id are validated here.
    controller : AuthController, optional
        Application callbacks (usually bound later by ``AuthService``).
    credential_store : CredentialStore, optional
        Credential persistence (default: secure storage chosen by
        ``auth.storage``).
    scopes : Sequence[str], optional
        Scopes requested on every login and refresh (default:
        ``auth.scopes``).
    flow : LoginFlow, optional
        Login flow strategy (default: selected for the platform).
    http_client : httpx.AsyncClient, optional
        HTTP client for the token endpoint. A private one is created and
        closed by ``aclose()`` if omitted.
    logger : logging.Logger, optional
        Logger to use (default ``appauth.auth``).

    Raises
    ------
    ConfigurationError
        If a required endpoint or the client id is missing.
    """

    def __init__(
        self,
        settings: AuthSettings,
        *,
        controller: AuthController[UserT, ResourceT] | None = None,
        credential_store: CredentialStore | None = None,
        scopes: Sequence[str] | None = None,
        flow: LoginFlow | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the provider."""
        super().__init__(controller)
        settings.require_oauth2()

        self._settings = settings
        self._scopes = list(scopes if scopes is not None else settings.scopes or [])
        self._credential_store = (
            credential_store
            if credential_store is not None
            else SecureCredentialStore(create_secure_storage(settings.storage))
        )
        self._flow = (
            flow
            if flow is not None
            else select_login_flow(resolve_platform(settings.platform.name), timeout=settings.timeout)
        )
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._logger = logger or logging.getLogger("appauth.auth")

        self._state = LoginState.NOT_LOGGED_IN
        self._client: OAuth2Client | None = None
        self._user: UserT | None = None
        self._pending: LoginOperation[OAuth2Client] | None = None
        self._login_done: asyncio.Event | None = None
        self._expiration_timer: asyncio.TimerHandle | None = None
        self._expiration_task: asyncio.Task[Any] | concurrent.futures.Future[Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ── Properties ───────────────────────────────────────────────────

    @property
    def state(self) -> LoginState:
        """Current login state.

        While logged in with expired credentials this reports
        ``NOT_LOGGED_IN`` and starts the expiration handler in the
        background; the handler refreshes the credentials or logs out.
        """
        if (
            self._state is LoginState.LOGGED_IN
            and self._client is not None
            and self._client.credentials.is_expired
        ):
            self._spawn_expiration_handler()
            return LoginState.NOT_LOGGED_IN
        return self._state

    @property
    def local_user(self) -> UserT | None:
        """The logged in user, or None."""
        return self._user

    @property
    def scopes(self) -> list[str]:
        """Scopes requested on every login and refresh."""
        return list(self._scopes)

    @property
    def credentials(self) -> Credentials | None:
        """The live credentials, or None when logged out."""
        return self._client.credentials if self._client is not None else None

    @property
    def client(self) -> OAuth2Client | None:
        """The authenticated client, or None when logged out."""
        return self._client

    @property
    def flow(self) -> LoginFlow:
        """The login flow strategy."""
        return self._flow

    @property
    def credential_store(self) -> CredentialStore:
        """The credential store."""
        return self._credential_store

    @property
    def is_login_pending(self) -> bool:
        """Whether a login attempt is in flight."""
        return self._pending is not None

    def is_resource_granted(self, resource: ResourceT) -> bool:
        """Grant every resource while logged in, none otherwise."""
        return self.state is LoginState.LOGGED_IN

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Run the login flow's startup hook."""
        self._loop = asyncio.get_running_loop()
        await self._flow.login_init(self._settings)

    async def aclose(self) -> None:
        """Cancel pending work and release the HTTP client.

        Stored credentials are kept so the next session can restore them.
        """
        await self._cancel_pending()
        self._cancel_expiration_timer()
        client, self._client = self._client, None
        if client is not None:
            await client.close()
        self._user = None
        self._state = LoginState.NOT_LOGGED_IN
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _http(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
            self._owns_http_client = True
        return self._http_client

    def _new_grant(self) -> AuthorizationCodeGrant:
        return AuthorizationCodeGrant(
            self._settings.client_id,
            self._settings.authorization_endpoint,
            self._settings.token_endpoint,
            secret=self._settings.client_secret,
            http_client=self._http(),
        )

    # ── Login / logout ───────────────────────────────────────────────

    async def login(self, listener: LoginFlowListener | None = None) -> bool:
        """Log in, silently when stored credentials can be refreshed.

        Parameters
        ----------
        listener : LoginFlowListener, optional
            Observer for the interactive flow.

        Returns
        -------
        bool
            True when logged in; False when the flow was cancelled or
            produced no client.

        Raises
        ------
        AuthenticationError
            If the authorization server rejected the login or refresh.
        StorageError
            If the credential store fails.
        """
        self._loop = asyncio.get_running_loop()

        if self._state is LoginState.IN_LOGIN_PROCESS:
            await self.logout()

        if self._state is LoginState.LOGGED_IN:
            self._logger.warning("Already logged in, resetting client credentials")
            await self._discard_client()
            self._state = LoginState.NOT_LOGGED_IN
            await self._handle_state_change()

        existing = await self._credential_store.restore()

        self._state = LoginState.IN_LOGIN_PROCESS
        done = asyncio.Event()
        self._login_done = done
        try:
            return await self._run_login(existing, listener)
        finally:
            done.set()

    async def _run_login(
        self,
        existing: Credentials | None,
        listener: LoginFlowListener | None,
    ) -> bool:
        op: LoginOperation[OAuth2Client] | None = None
        try:
            if existing is None:
                self._logger.info("Starting authorization flow")
                op = self._flow.run(self._settings, self._new_grant(), self._scopes, listener)
            else:
                self._logger.info("Refreshing token using existing credentials")
                op = LoginOperation.start(self._refresh_restored(existing), name="appauth-refresh")
            self._pending = op
            try:
                client = await op.value_or_cancellation()
            finally:
                if self._pending is op:
                    self._pending = None
            if op.is_cancelled:
                self._logger.warning("Login has been cancelled")
        except AuthenticationError as exc:
            await self._discard_client()
            self._state = LoginState.NOT_LOGGED_IN
            self._logger.error("Error during login: %s", exc)
            await self._settle_logged_out()
            raise
        except BaseException:
            if op is not None and not op.done:
                await op.cancel()
            await self._discard_client()
            self._state = LoginState.NOT_LOGGED_IN
            raise

        if client is None:
            self._state = LoginState.NOT_LOGGED_IN
            self._logger.info("Login was not completed")
            await self._handle_state_change()
            return False

        self._client = client
        self._state = LoginState.LOGGED_IN
        self._logger.info("Login succeeded")

        try:
            await self._handle_state_change()
        except BaseException as exc:
            self._logger.error("Could not complete login, resetting: %s", exc)
            await self._discard_client()
            self._user = None
            self._state = LoginState.NOT_LOGGED_IN
            await self._settle_logged_out()
            raise

        if client.credentials.expiration is not None:
            self._logger.debug("Access token will expire at %s", time.ctime(client.credentials.expiration))
        self._schedule_expiration_timer(client.credentials)
        return True

    async def _refresh_restored(self, credentials: Credentials) -> OAuth2Client:
        client = OAuth2Client(
            credentials,
            identifier=self._settings.client_id,
            secret=self._settings.client_secret,
            http_client=self._http(),
        )
        try:
            await client.refresh_credentials(self._scopes)
        except BaseException:
            await client.close()
            raise
        return client

    async def logout(self) -> None:
        """Log out; a no-op when nobody is logged in.

        A pending login attempt is cancelled first. The stored
        credentials are cleared but not revoked at the server.
        """
        await self._cancel_pending()

        if self._client is None:
            return

        self._logger.info("Logging out")
        await self._discard_client()
        self._state = LoginState.NOT_LOGGED_IN
        await self._handle_state_change()

    async def _cancel_pending(self) -> None:
        op = self._pending
        if op is None:
            return
        self._logger.warning("Cancelling already ongoing login process")
        self._pending = None
        done = self._login_done
        await op.cancel()
        if done is not None:
            await done.wait()

    async def _discard_client(self) -> None:
        self._cancel_expiration_timer()
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def _handle_state_change(self) -> None:
        """Build or drop the user, persist or clear credentials, notify."""
        if self._client is not None:
            credentials = self._client.credentials
            self._user = self.controller.on_create_user(credentials.to_claims())
            await self._credential_store.store(credentials)
            if self.controller.on_login is not None:
                self.controller.on_login(self._user)
        else:
            if self._user is not None:
                if self.controller.on_logout is not None:
                    self.controller.on_logout(self._user)
                self._user = None
            await self._credential_store.clear()

        self.notify_listeners()

    async def _settle_logged_out(self) -> None:
        """Run the logged-out state change; storage failures are only logged."""
        try:
            await self._handle_state_change()
        except StorageError as exc:
            self._logger.error("Could not clear stored credentials: %s", exc)
            self.notify_listeners()

    # ── Refresh and expiration ───────────────────────────────────────

    async def refresh_credentials(self) -> Credentials:
        """Refresh the live credentials and persist them.

        Returns
        -------
        Credentials
            The refreshed credentials.

        Raises
        ------
        TokenRefreshError
            If nobody is logged in or the credentials cannot be refreshed.
        AuthorizationError
            If the server rejects the refresh token.
        """
        if self._client is None:
            msg = "Cannot refresh credentials, not logged in"
            raise TokenRefreshError(msg, error="not_logged_in")
        return await self._refresh_client(self._client)

    async def _refresh_client(self, client: OAuth2Client) -> Credentials:
        credentials = await client.refresh_credentials(self._scopes)
        if self._client is client:
            await self._credential_store.store(credentials)
            self._schedule_expiration_timer(credentials)
        return credentials

    async def _handle_expiration(self) -> None:
        if self._state is LoginState.NOT_LOGGED_IN or self._client is None:
            return

        self._logger.warning("Access token is expired, trying refresh")
        try:
            await self._refresh_client(self._client)
        except AuthenticationError as exc:
            self._logger.error("Error refreshing access token: %s", exc)
            await self.logout()

    def _spawn_expiration_handler(self) -> None:
        if self._expiration_task is not None and not self._expiration_task.done():
            return
        try:
            self._expiration_task = spawn_background(
                self._handle_expiration(),
                loop=self._loop,
                name="appauth-expiration",
            )
        except RuntimeError as exc:
            self._logger.warning("Could not schedule access token refresh: %s", exc)

    def _schedule_expiration_timer(self, credentials: Credentials) -> None:
        self._cancel_expiration_timer()
        if credentials.expiration is None:
            return
        delay = max(0.0, credentials.expiration - time.time())
        loop = self._loop or asyncio.get_running_loop()
        self._expiration_timer = loop.call_later(delay, self._on_expiration_timer)

    def _on_expiration_timer(self) -> None:
        self._expiration_timer = None
        self._spawn_expiration_handler()

    def _cancel_expiration_timer(self) -> None:
        if self._expiration_timer is not None:
            self._expiration_timer.cancel()
            self._expiration_timer = None
