"""OAuth2 login flow strategies.

A login flow drives the user through the authorization code redirect and
returns an ``OAuth2Client`` holding the exchanged credentials. One flow
is chosen per platform when the provider is constructed:

- ``LoopbackLoginFlow`` (native): binds a temporary HTTP listener at the
  redirect URL and opens the authorization URL in the system browser.
- ``WebLoginFlow`` (browser): waits for the callback page to relay the
  redirect URL through a ``RedirectChannel``.
- ``UnsupportedLoginFlow``: logs a warning and yields no client.

Every flow runs as a ``LoginOperation``; cancelling it resolves to None
and releases the listener or channel subscription.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import inspect
import logging
import sys
import webbrowser

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import parse_qsl, urljoin, urlsplit, urlunsplit

from ..exceptions import ConfigurationError
from ..types import Platform, QueryParams
from .callback_server import LoopbackCallbackServer, matches_redirect_url
from .operation import LoginOperation
from .web_channel import RedirectChannel, get_redirect_channel


if TYPE_CHECKING:
    from ..config import AuthSettings
    from .grant import AuthorizationCodeGrant, OAuth2Client


logger = logging.getLogger("appauth.auth")

DEFAULT_WEB_REDIRECT_URL = "/login/oidc/callback"
DEFAULT_IO_REDIRECT_URL = "http://localhost:9004/login/oidc/callback"

# Path of the callback page served by ``web_routes``.
CALLBACK_ASSET_PATH = "/assets/appauth/callback.html"


class LoginFlowListener:
    """Observer notified while a login flow runs.

    Parameters
    ----------
    on_open_authorization : callable, optional
        Called with the authorization URL once it has been opened. May
        return an awaitable.
    """

    def __init__(
        self,
        on_open_authorization: Callable[[str], Awaitable[None] | None] | None = None,
    ) -> None:
        """Initialize the listener."""
        self._on_open_authorization = on_open_authorization

    async def open_authorization(self, url: str) -> None:
        """Notify that *url* was opened for the user."""
        if self._on_open_authorization is None:
            return
        result = self._on_open_authorization(url)
        if inspect.isawaitable(result):
            await result


@runtime_checkable
class WindowHost(Protocol):
    """Desktop window the native flow hides during authorization."""

    async def minimize(self) -> None:
        """Minimize the application window."""

    async def show(self) -> None:
        """Restore the application window."""

    async def focus(self) -> None:
        """Bring the application window to the front."""


@runtime_checkable
class BrowserHost(Protocol):
    """Browser page hosting a web application."""

    @property
    def current_url(self) -> str:
        """The page's current absolute URL."""

    async def navigate(self, url: str) -> None:
        """Navigate the current page to *url*."""

    async def open_window(self, url: str) -> None:
        """Open *url* in a new browser window or tab."""


async def open_in_system_browser(url: str) -> bool:
    """Open *url* with ``webbrowser`` without blocking the event loop.

    Returns
    -------
    bool
        Whether a browser could be launched.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, webbrowser.open, url)


def _query_params(url: str) -> QueryParams:
    return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))


async def _restore_window(window_host: WindowHost) -> None:
    try:
        await window_host.show()
        await window_host.focus()
    except Exception as exc:
        logger.warning("Could not restore the application window: %s", exc)


class LoginFlow(ABC):
    """Base class for platform login flows.

    Parameters
    ----------
    timeout : float, optional
        Seconds to wait for the user before giving up. None waits until
        cancelled.
    open_browser : bool
        Whether to launch a browser for the authorization URL (default
        ``True``). The listener is notified either way.
    """

    platform: Platform

    def __init__(self, timeout: float | None = None, open_browser: bool = True) -> None:
        """Initialize the flow."""
        self.timeout = timeout
        self.open_browser = open_browser

    @abstractmethod
    def redirect_url(self, settings: AuthSettings) -> str:
        """Return the absolute redirect URL for *settings*."""

    def run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: Sequence[str],
        listener: LoginFlowListener | None = None,
    ) -> LoginOperation[OAuth2Client]:
        """Start the flow as a cancellable operation.

        Parameters
        ----------
        settings : AuthSettings
            Auth configuration (redirect URLs).
        grant : AuthorizationCodeGrant
            A fresh grant used for this attempt only.
        scopes : Sequence[str]
            Scopes to request.
        listener : LoginFlowListener, optional
            Observer notified when the authorization URL is opened.

        Returns
        -------
        LoginOperation
            Resolves to the authenticated client, or None if the flow
            was cancelled, timed out or could not open the login page.
        """
        return LoginOperation.start(
            self._run_bounded(settings, grant, list(scopes), listener),
            name=f"appauth-login-{self.platform.value}",
        )

    async def login_init(self, settings: AuthSettings) -> None:
        """Startup hook run once before the application starts."""

    async def _run_bounded(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        if self.timeout is None:
            return await self._run(settings, grant, scopes, listener)
        try:
            return await asyncio.wait_for(self._run(settings, grant, scopes, listener), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Login flow timed out after %ss", self.timeout)
            return None

    @abstractmethod
    async def _run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        """Drive one authorization attempt."""

    async def _launch(self, url: str) -> None:
        if self.open_browser and not await open_in_system_browser(url):
            logger.warning("No browser available to open the login page")

    async def _open_authorization(self, url: str, listener: LoginFlowListener | None) -> bool:
        try:
            await self._launch(url)
            if listener is not None:
                await listener.open_authorization(url)
        except Exception as exc:
            logger.error("Could not open login page: %s", exc)
            return False
        return True


class LoopbackLoginFlow(LoginFlow):
    """Native flow catching the redirect on a local HTTP listener.

    Parameters
    ----------
    window_host : WindowHost, optional
        Application window to minimize while the user authenticates.
    timeout : float, optional
        Seconds to wait for the redirect.
    open_browser : bool
        Whether to open the system browser.
    """

    platform = Platform.NATIVE

    def __init__(
        self,
        window_host: WindowHost | None = None,
        timeout: float | None = None,
        open_browser: bool = True,
    ) -> None:
        """Initialize the loopback flow."""
        super().__init__(timeout=timeout, open_browser=open_browser)
        self.window_host = window_host

    def redirect_url(self, settings: AuthSettings) -> str:
        """Configured ``auth.platform.io.redirect_url`` or the loopback default."""
        return settings.platform.io.redirect_url or DEFAULT_IO_REDIRECT_URL

    async def _run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        server = LoopbackCallbackServer(self.redirect_url(settings))
        try:
            redirect_url = server.start()
        except OSError as exc:
            logger.error("Could not bind local OAuth2 redirect listener: %s", exc)
            return None

        minimized = False
        try:
            authorization_url = grant.get_authorization_url(redirect_url, scopes)
            logger.debug("Opening authorization URL, scopes=%s", scopes)

            if self.window_host is not None:
                await self.window_host.minimize()
                minimized = True

            if not await self._open_authorization(authorization_url, listener):
                return None

            logger.debug("Awaiting authorization response...")
            params = await server.wait_for_response()
        finally:
            await server.aclose()
            if minimized and self.window_host is not None:
                await _restore_window(self.window_host)

        return await grant.handle_authorization_response(params)


class WebLoginFlow(LoginFlow):
    """Browser flow receiving the redirect through a ``RedirectChannel``.

    The browser navigates away to the authorization server and back to
    the redirect URL; ``login_init`` forwards that page to the callback
    asset, which relays its URL to the waiting flow.

    Parameters
    ----------
    browser_host : BrowserHost, optional
        The hosting page. Used to resolve relative redirect URLs, open
        the authorization URL and run ``login_init``.
    base_url : str, optional
        Base for relative redirect URLs when there is no browser host.
    channel : RedirectChannel, optional
        Channel the callback page publishes to (default: process-wide).
    timeout : float, optional
        Seconds to wait for the redirect.
    open_browser : bool
        Whether to open the authorization URL.
    """

    platform = Platform.WEB

    def __init__(
        self,
        browser_host: BrowserHost | None = None,
        base_url: str | None = None,
        channel: RedirectChannel | None = None,
        timeout: float | None = None,
        open_browser: bool = True,
    ) -> None:
        """Initialize the web flow."""
        super().__init__(timeout=timeout, open_browser=open_browser)
        self.browser_host = browser_host
        self.base_url = base_url
        self.channel = channel if channel is not None else get_redirect_channel()

    def redirect_url(self, settings: AuthSettings) -> str:
        """Configured ``auth.platform.web.redirect_url`` resolved to an absolute URL."""
        url = settings.platform.web.redirect_url or DEFAULT_WEB_REDIRECT_URL
        if urlsplit(url).scheme:
            return url
        base = self.browser_host.current_url if self.browser_host is not None else self.base_url
        if not base:
            msg = f"Cannot resolve relative redirect URL '{url}' without a base URL"
            raise ConfigurationError(msg, key="auth.platform.web.redirect_url")
        return urljoin(base, url)

    def _is_redirect(self, url: str, redirect_url: str) -> bool:
        asset_url = urlunsplit(urlsplit(redirect_url)._replace(path=CALLBACK_ASSET_PATH))
        return matches_redirect_url(url, redirect_url) or matches_redirect_url(url, asset_url)

    async def _launch(self, url: str) -> None:
        if not self.open_browser:
            return
        if self.browser_host is not None:
            await self.browser_host.open_window(url)
        else:
            await super()._launch(url)

    async def _run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        redirect_url = self.redirect_url(settings)
        authorization_url = grant.get_authorization_url(redirect_url, scopes)

        loop = asyncio.get_running_loop()
        response: asyncio.Future[QueryParams] = loop.create_future()

        def _resolve(params: QueryParams) -> None:
            if not response.done():
                response.set_result(params)

        def _on_redirect(url: str) -> None:
            if not self._is_redirect(url, redirect_url):
                logger.warning("Invalid OAuth2 login response received %s", urlsplit(url).path)
                return
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, _query_params(url))

        unsubscribe = self.channel.subscribe(_on_redirect)
        try:
            logger.debug("Opening authorization URL, scopes=%s", scopes)
            if not await self._open_authorization(authorization_url, listener):
                return None

            logger.debug("Awaiting authorization response...")
            params = await response
        finally:
            unsubscribe()

        logger.debug("Received OAuth2 login response")
        return await grant.handle_authorization_response(params)

    async def login_init(self, settings: AuthSettings) -> None:
        """Forward a page loaded at the redirect URL to the callback asset.

        When the host page's URL is the redirect URL, this navigates to
        the callback asset (keeping the query string) and never returns.
        """
        if self.browser_host is None:
            return
        current = urlsplit(self.browser_host.current_url)
        redirect = urlsplit(self.redirect_url(settings))
        if matches_redirect_url(current, redirect):
            target = urlunsplit(current._replace(path=CALLBACK_ASSET_PATH, fragment=""))
            logger.debug("Forwarding OAuth2 redirect to %s", CALLBACK_ASSET_PATH)
            await self.browser_host.navigate(target)
            # This page only ever completes the redirect.
            await asyncio.Event().wait()


class UnsupportedLoginFlow(LoginFlow):
    """Flow for platforms without a login mechanism; yields no client."""

    platform = Platform.UNSUPPORTED

    def redirect_url(self, settings: AuthSettings) -> str:
        """Configured IO redirect URL (unused)."""
        return settings.platform.io.redirect_url or DEFAULT_IO_REDIRECT_URL

    def run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: Sequence[str],
        listener: LoginFlowListener | None = None,
    ) -> LoginOperation[OAuth2Client]:
        """Log a warning and resolve immediately to None."""
        logger.warning("OAuth2 login is not supported on platform '%s'", sys.platform)
        return LoginOperation.from_value(None)

    async def _run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        return None


_NATIVE_PLATFORMS = ("linux", "darwin", "win32", "cygwin", "freebsd", "openbsd", "ios", "android")


def detect_platform() -> Platform:
    """Detect the platform family of the running interpreter."""
    if sys.platform in ("emscripten", "wasi"):
        return Platform.WEB
    if sys.platform.startswith(_NATIVE_PLATFORMS):
        return Platform.NATIVE
    return Platform.UNSUPPORTED


def resolve_platform(name: str = "auto") -> Platform:
    """Map a configured platform name to a ``Platform``.

    ``"auto"`` detects the platform; other values name it explicitly.
    """
    if name == "auto":
        return detect_platform()
    try:
        return Platform(name)
    except ValueError as exc:
        msg = f"Unknown platform '{name}'"
        raise ConfigurationError(msg, key="auth.platform.name") from exc


def select_login_flow(
    platform: Platform,
    *,
    timeout: float | None = None,
    open_browser: bool = True,
    window_host: WindowHost | None = None,
    browser_host: BrowserHost | None = None,
    base_url: str | None = None,
    channel: RedirectChannel | None = None,
) -> LoginFlow:
    """Create the login flow for *platform*.

    Parameters
    ----------
    platform : Platform
        The platform family.
    timeout : float, optional
        Seconds to wait for the user.
    open_browser : bool
        Whether flows launch a browser.
    window_host : WindowHost, optional
        Native application window.
    browser_host : BrowserHost, optional
        Hosting browser page for the web flow.
    base_url : str, optional
        Base URL for relative web redirect URLs.
    channel : RedirectChannel, optional
        Redirect channel for the web flow.

    Returns
    -------
    LoginFlow
        The flow strategy.
    """
    if platform is Platform.WEB:
        return WebLoginFlow(
            browser_host=browser_host,
            base_url=base_url,
            channel=channel,
            timeout=timeout,
            open_browser=open_browser,
        )
    if platform is Platform.NATIVE:
        return LoopbackLoginFlow(window_host=window_host, timeout=timeout, open_browser=open_browser)
    return UnsupportedLoginFlow(timeout=timeout, open_browser=open_browser)
