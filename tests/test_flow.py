"""Tests for the platform login flows."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import socket
import sys

from typing import Any
from unittest.mock import AsyncMock, patch
from urllib.error import HTTPError
from urllib.parse import parse_qs, urlsplit
from urllib.request import urlopen

import httpx
import pytest

from appauth.auth.flow import (
    CALLBACK_ASSET_PATH,
    DEFAULT_IO_REDIRECT_URL,
    LoginFlowListener,
    LoopbackLoginFlow,
    UnsupportedLoginFlow,
    WebLoginFlow,
    detect_platform,
    resolve_platform,
    select_login_flow,
)
from appauth.auth.grant import AuthorizationCodeGrant, OAuth2Client
from appauth.auth.web_channel import MESSAGE_PREFIX, RedirectChannel
from appauth.config import AuthSettings
from appauth.exceptions import AuthorizationError, ConfigurationError
from appauth.types import Platform
from tests.helpers import (
    AUTH_CONFIG,
    AUTHORIZATION_ENDPOINT,
    CLIENT_ID,
    TOKEN_ENDPOINT,
    FakeTokenEndpoint,
    wait_until,
)


LOOPBACK_REDIRECT = "http://127.0.0.1:0/login/oidc/callback"


def _settings(**auth: Any) -> AuthSettings:
    return AuthSettings.from_mapping({"auth": {**AUTH_CONFIG["auth"], **auth}})


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _get(url: str) -> int:
    try:
        with urlopen(url, timeout=5) as resp:  # noqa: S310
            return resp.status
    except HTTPError as exc:
        return exc.code


def _port_is_free(port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(("127.0.0.1", port))
    except OSError:
        return False
    finally:
        sock.close()
    return True


class FakeBrowserHost:
    """Records navigation on a hosting browser page."""

    def __init__(self, current_url: str = "http://app.test/home") -> None:
        self._current_url = current_url
        self.navigated: list[str] = []
        self.opened: list[str] = []

    @property
    def current_url(self) -> str:
        return self._current_url

    async def navigate(self, url: str) -> None:
        self.navigated.append(url)

    async def open_window(self, url: str) -> None:
        self.opened.append(url)


@pytest.fixture()
def loopback_settings() -> AuthSettings:
    """Settings with an ephemeral loopback redirect URL."""
    return _settings(platform={"io": {"redirectUrl": LOOPBACK_REDIRECT}})


@pytest.fixture()
def grant(http_client: httpx.AsyncClient) -> AuthorizationCodeGrant:
    """A fresh grant against the fake token endpoint."""
    return AuthorizationCodeGrant(CLIENT_ID, AUTHORIZATION_ENDPOINT, TOKEN_ENDPOINT, http_client=http_client)


# ── LoopbackLoginFlow ───────────────────────────────────────────────


class TestLoopbackLoginFlow:
    """Tests for the native loopback flow."""

    def test_default_redirect_url(self) -> None:
        assert LoopbackLoginFlow().redirect_url(_settings()) == DEFAULT_IO_REDIRECT_URL

    @pytest.mark.asyncio
    async def test_stray_request_then_redirect(
        self,
        loopback_settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        token_endpoint: FakeTokenEndpoint,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        urls: asyncio.Queue[str] = asyncio.Queue()
        flow = LoopbackLoginFlow(open_browser=False)

        op = flow.run(loopback_settings, grant, ["openid"], LoginFlowListener(urls.put_nowait))
        auth_url = await asyncio.wait_for(urls.get(), 5)
        params = _query(auth_url)
        redirect = params["redirect_uri"]
        port = urlsplit(redirect).port
        assert port

        stray = await asyncio.to_thread(_get, f"http://127.0.0.1:{port}/wrong?code=evil&state={params['state']}")
        valid = await asyncio.to_thread(_get, f"{redirect}?code=good&state={params['state']}")
        client = await asyncio.wait_for(op.value_or_cancellation(), 5)

        assert stray == 404
        assert valid == 200
        assert isinstance(client, OAuth2Client)
        assert client.credentials.access_token == "at-new"
        assert len(token_endpoint.requests) == 1
        assert token_endpoint.last["code"] == "good"
        assert token_endpoint.last["redirect_uri"] == redirect
        assert "Invalid OAuth2 login response received" in caplog.text
        assert _port_is_free(port)

    @pytest.mark.asyncio
    async def test_authorization_error_is_raised(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant, token_endpoint: FakeTokenEndpoint
    ) -> None:
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(urls.put_nowait)
        )
        params = _query(await asyncio.wait_for(urls.get(), 5))
        await asyncio.to_thread(_get, f"{params['redirect_uri']}?error=access_denied&state={params['state']}")

        with pytest.raises(AuthorizationError):
            await asyncio.wait_for(op.value_or_cancellation(), 5)
        assert not token_endpoint.requests

    @pytest.mark.asyncio
    async def test_cancel_releases_port(self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant) -> None:
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(urls.put_nowait)
        )
        port = urlsplit(_query(await asyncio.wait_for(urls.get(), 5))["redirect_uri"]).port
        assert port

        await op.cancel()

        assert op.is_cancelled
        assert await op.value_or_cancellation() is None
        assert _port_is_free(port)

    @pytest.mark.asyncio
    async def test_listener_failure_yields_none(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(url: str) -> None:
            raise RuntimeError("no display")

        op = LoopbackLoginFlow(open_browser=False).run(loopback_settings, grant, [], LoginFlowListener(broken))

        assert await asyncio.wait_for(op.value_or_cancellation(), 5) is None
        assert "Could not open login page" in caplog.text

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        seen: list[str] = []

        async def on_open(url: str) -> None:
            seen.append(url)

        op = LoopbackLoginFlow(open_browser=False).run(loopback_settings, grant, [], LoginFlowListener(on_open))
        await wait_until(lambda: bool(seen))
        await op.cancel()

        assert seen[0].startswith(AUTHORIZATION_ENDPOINT)

    @pytest.mark.asyncio
    async def test_timeout_yields_none(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant, caplog: pytest.LogCaptureFixture
    ) -> None:
        op = LoopbackLoginFlow(open_browser=False, timeout=0.2).run(loopback_settings, grant, [])

        assert await asyncio.wait_for(op.value_or_cancellation(), 5) is None
        assert not op.is_cancelled
        assert "timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_bind_failure_yields_none(self, grant: AuthorizationCodeGrant, caplog: pytest.LogCaptureFixture) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            port = blocker.getsockname()[1]
            settings = _settings(platform={"io": {"redirectUrl": f"http://127.0.0.1:{port}/cb"}})
            op = LoopbackLoginFlow(open_browser=False).run(settings, grant, [])
            assert await asyncio.wait_for(op.value_or_cancellation(), 5) is None
        finally:
            blocker.close()
        assert "Could not bind local OAuth2 redirect listener" in caplog.text

    @pytest.mark.asyncio
    async def test_window_host_is_minimized_and_restored(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        window = AsyncMock()
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(window_host=window, open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(urls.put_nowait)
        )
        params = _query(await asyncio.wait_for(urls.get(), 5))
        window.minimize.assert_awaited_once()
        window.show.assert_not_awaited()

        await asyncio.to_thread(_get, f"{params['redirect_uri']}?code=c&state={params['state']}")
        await asyncio.wait_for(op.value_or_cancellation(), 5)

        window.show.assert_awaited_once()
        window.focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_opens_system_browser(self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant) -> None:
        with patch("appauth.auth.flow.webbrowser.open", return_value=True) as browser_open:
            op = LoopbackLoginFlow().run(loopback_settings, grant, ["openid"])
            await wait_until(lambda: browser_open.called)
            await op.cancel()

        assert browser_open.call_args[0][0].startswith(AUTHORIZATION_ENDPOINT)

    @pytest.mark.asyncio
    async def test_cancel_with_idle_connection_does_not_block(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(open_browser=False).run(loopback_settings, grant, [], LoginFlowListener(urls.put_nowait))
        port = urlsplit(_query(await asyncio.wait_for(urls.get(), 5))["redirect_uri"]).port
        assert port

        idle = socket.create_connection(("127.0.0.1", port), timeout=5)
        try:
            await asyncio.sleep(0.1)
            loop = asyncio.get_running_loop()
            started = loop.time()
            await asyncio.wait_for(op.cancel(), 2)
            elapsed = loop.time() - started
        finally:
            idle.close()

        assert await op.value_or_cancellation() is None
        assert elapsed < 2

    @pytest.mark.asyncio
    async def test_window_is_restored_when_cancelled(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        window = AsyncMock()
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(window_host=window, open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(urls.put_nowait)
        )
        await asyncio.wait_for(urls.get(), 5)

        await op.cancel()

        assert await op.value_or_cancellation() is None
        window.minimize.assert_awaited_once()
        window.show.assert_awaited_once()
        window.focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_window_is_restored_when_launch_fails(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        window = AsyncMock()

        def on_open(url: str) -> None:
            raise RuntimeError("no display")

        op = LoopbackLoginFlow(window_host=window, open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(on_open)
        )

        assert await asyncio.wait_for(op.value_or_cancellation(), 5) is None
        window.show.assert_awaited_once()
        window.focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_window_is_restored_on_authorization_error(
        self, loopback_settings: AuthSettings, grant: AuthorizationCodeGrant
    ) -> None:
        window = AsyncMock()
        urls: asyncio.Queue[str] = asyncio.Queue()
        op = LoopbackLoginFlow(window_host=window, open_browser=False).run(
            loopback_settings, grant, [], LoginFlowListener(urls.put_nowait)
        )
        params = _query(await asyncio.wait_for(urls.get(), 5))

        await asyncio.to_thread(_get, f"{params['redirect_uri']}?error=access_denied&state={params['state']}")
        with pytest.raises(AuthorizationError):
            await asyncio.wait_for(op.value_or_cancellation(), 5)

        window.show.assert_awaited_once()
        window.focus.assert_awaited_once()


# ── WebLoginFlow ────────────────────────────────────────────────────


class TestWebLoginFlow:
    """Tests for the browser flow and its redirect channel."""

    def test_relative_redirect_url_uses_host_page(self) -> None:
        flow = WebLoginFlow(browser_host=FakeBrowserHost("https://app.test/some/page"), channel=RedirectChannel())
        assert flow.redirect_url(_settings()) == "https://app.test/login/oidc/callback"

    def test_relative_redirect_url_uses_base_url(self) -> None:
        flow = WebLoginFlow(base_url="https://app.test/", channel=RedirectChannel())
        settings = _settings(platform={"web": {"redirectUrl": "auth/done"}})
        assert flow.redirect_url(settings) == "https://app.test/auth/done"

    def test_absolute_redirect_url_is_kept(self) -> None:
        flow = WebLoginFlow(channel=RedirectChannel())
        settings = _settings(platform={"web": {"redirectUrl": "https://other.test/cb"}})
        assert flow.redirect_url(settings) == "https://other.test/cb"

    def test_relative_redirect_url_without_base(self) -> None:
        flow = WebLoginFlow(channel=RedirectChannel())
        with pytest.raises(ConfigurationError) as exc_info:
            flow.redirect_url(_settings())
        assert exc_info.value.key == "auth.platform.web.redirect_url"

    @pytest.mark.asyncio
    async def test_login_through_channel(
        self, grant: AuthorizationCodeGrant, token_endpoint: FakeTokenEndpoint, caplog: pytest.LogCaptureFixture
    ) -> None:
        channel = RedirectChannel()
        host = FakeBrowserHost()
        op = WebLoginFlow(browser_host=host, channel=channel).run(_settings(), grant, ["openid"])

        await wait_until(lambda: bool(host.opened))
        assert channel.subscriber_count == 1
        state = _query(host.opened[0])["state"]
        assert _query(host.opened[0])["redirect_uri"] == "http://app.test/login/oidc/callback"

        channel.publish(f"http://evil.test/login/oidc/callback?code=evil&state={state}")
        await asyncio.to_thread(
            channel.publish,
            f"{MESSAGE_PREFIX}http://app.test{CALLBACK_ASSET_PATH}?code=good&state={state}",
        )
        client = await asyncio.wait_for(op.value_or_cancellation(), 5)

        assert client is not None
        assert token_endpoint.last["code"] == "good"
        assert channel.subscriber_count == 0
        assert "Invalid OAuth2 login response received" in caplog.text

    @pytest.mark.asyncio
    async def test_redirect_url_is_accepted(self, grant: AuthorizationCodeGrant, token_endpoint: FakeTokenEndpoint) -> None:
        channel = RedirectChannel()
        host = FakeBrowserHost()
        op = WebLoginFlow(browser_host=host, channel=channel).run(_settings(), grant, [])
        await wait_until(lambda: bool(host.opened))
        state = _query(host.opened[0])["state"]

        channel.publish(f"http://app.test/login/oidc/callback?code=direct&state={state}")

        assert await asyncio.wait_for(op.value_or_cancellation(), 5) is not None
        assert token_endpoint.last["code"] == "direct"

    @pytest.mark.asyncio
    async def test_cancel_unsubscribes(self, grant: AuthorizationCodeGrant) -> None:
        channel = RedirectChannel()
        host = FakeBrowserHost()
        op = WebLoginFlow(browser_host=host, channel=channel).run(_settings(), grant, [])
        await wait_until(lambda: channel.subscriber_count == 1)

        await op.cancel()

        assert await op.value_or_cancellation() is None
        assert channel.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_no_browser_host_notifies_listener_only(self, grant: AuthorizationCodeGrant) -> None:
        channel = RedirectChannel()
        urls: asyncio.Queue[str] = asyncio.Queue()
        flow = WebLoginFlow(base_url="http://app.test/", channel=channel, open_browser=False)
        op = flow.run(_settings(), grant, [], LoginFlowListener(urls.put_nowait))

        assert (await asyncio.wait_for(urls.get(), 5)).startswith(AUTHORIZATION_ENDPOINT)
        await op.cancel()

    @pytest.mark.asyncio
    async def test_login_init_forwards_redirect_page(self) -> None:
        host = FakeBrowserHost("http://app.test/login/oidc/callback?code=c&state=s")
        flow = WebLoginFlow(browser_host=host, channel=RedirectChannel())

        task = asyncio.ensure_future(flow.login_init(_settings()))
        await wait_until(lambda: bool(host.navigated))
        await asyncio.sleep(0.05)

        assert host.navigated == [f"http://app.test{CALLBACK_ASSET_PATH}?code=c&state=s"]
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_login_init_elsewhere_returns(self) -> None:
        host = FakeBrowserHost("http://app.test/dashboard")
        await asyncio.wait_for(WebLoginFlow(browser_host=host, channel=RedirectChannel()).login_init(_settings()), 1)
        assert host.navigated == []

    @pytest.mark.asyncio
    async def test_login_init_requires_same_scheme(self) -> None:
        host = FakeBrowserHost("https://app.test/login/oidc/callback?code=c&state=s")
        settings = _settings(platform={"web": {"redirectUrl": "http://app.test/login/oidc/callback"}})

        await asyncio.wait_for(WebLoginFlow(browser_host=host, channel=RedirectChannel()).login_init(settings), 1)

        assert host.navigated == []


# ── UnsupportedLoginFlow and platform selection ─────────────────────


class TestUnsupportedLoginFlow:
    """Tests for the unsupported-platform flow."""

    @pytest.mark.asyncio
    async def test_resolves_to_none(self, grant: AuthorizationCodeGrant, caplog: pytest.LogCaptureFixture) -> None:
        op = UnsupportedLoginFlow().run(_settings(), grant, ["openid"])

        assert op.done
        assert await op.value_or_cancellation() is None
        assert "not supported" in caplog.text


class TestPlatformSelection:
    """Tests for platform detection and flow selection."""

    @pytest.mark.parametrize(
        ("sys_platform", "expected"),
        [
            ("emscripten", Platform.WEB),
            ("wasi", Platform.WEB),
            ("linux", Platform.NATIVE),
            ("darwin", Platform.NATIVE),
            ("win32", Platform.NATIVE),
            ("freebsd14", Platform.NATIVE),
            ("sunos5", Platform.UNSUPPORTED),
        ],
    )
    def test_detect_platform(self, monkeypatch: pytest.MonkeyPatch, sys_platform: str, expected: Platform) -> None:
        monkeypatch.setattr(sys, "platform", sys_platform)
        assert detect_platform() is expected

    def test_resolve_platform(self) -> None:
        assert resolve_platform("web") is Platform.WEB
        assert resolve_platform("native") is Platform.NATIVE
        assert resolve_platform("unsupported") is Platform.UNSUPPORTED
        assert resolve_platform("auto") is detect_platform()

    def test_resolve_unknown_platform(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve_platform("toaster")

    def test_select_login_flow(self) -> None:
        channel = RedirectChannel()
        web = select_login_flow(Platform.WEB, base_url="http://app.test/", channel=channel, timeout=5)
        native = select_login_flow(Platform.NATIVE, open_browser=False)
        unsupported = select_login_flow(Platform.UNSUPPORTED)

        assert isinstance(web, WebLoginFlow)
        assert web.channel is channel
        assert web.timeout == 5
        assert isinstance(native, LoopbackLoginFlow)
        assert native.open_browser is False
        assert isinstance(unsupported, UnsupportedLoginFlow)
