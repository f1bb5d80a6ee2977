"""Ephemeral loopback HTTP server for OAuth2 redirect capture.

Used by the native login flow to catch the authorization server's redirect
on the redirect URL's host and port. Only a request whose scheme, host,
port, user info and path equal the redirect URL's is accepted; it gets a
confirmation page and its query parameters resolve the wait. Any other
request gets a 404 and the server keeps waiting.
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import SplitResult, parse_qsl, urlsplit, urlunsplit

from ..types import QueryParams


logger = logging.getLogger("appauth.auth")

_DEFAULT_PORTS = {"http": 80, "https": 443}

REQUEST_TIMEOUT = 5.0

_CONFIRMATION_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Complete</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
</style></head>
<body><div class="card">
  <h1>Login complete</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Authentication Error</title></head>
<body><div class="card">
  <h1>Login failed</h1>
  <p>{error}</p>
</div></body></html>"""


def _effective_port(parts: SplitResult) -> int | None:
    try:
        port = parts.port
    except ValueError:
        return None
    return port if port is not None else _DEFAULT_PORTS.get(parts.scheme.lower())


def matches_redirect_url(candidate: str | SplitResult, redirect_url: str | SplitResult) -> bool:
    """Whether *candidate* addresses the same endpoint as *redirect_url*.

    Scheme, host, port, user info and path must be equal; the query and
    fragment are ignored.
    """
    cand = urlsplit(candidate) if isinstance(candidate, str) else candidate
    redirect = urlsplit(redirect_url) if isinstance(redirect_url, str) else redirect_url
    return (
        cand.scheme.lower() == redirect.scheme.lower()
        and (cand.hostname or "") == (redirect.hostname or "")
        and _effective_port(cand) == _effective_port(redirect)
        and (cand.username, cand.password) == (redirect.username, redirect.password)
        and (cand.path or "/") == (redirect.path or "/")
    )


def with_port(url: str, port: int) -> str:
    """Return *url* with its port replaced by *port*."""
    parts = urlsplit(url)
    netloc = parts.hostname or ""
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit(parts._replace(netloc=f"{netloc}:{port}"))


class LoopbackCallbackServer:
    """Loopback HTTP listener bound to the redirect URL's host and port.

    The server must be started from a running event loop; the first
    matching request resolves ``wait_for_response()`` on that loop.
    Port ``0`` in the redirect URL binds an ephemeral port, and
    ``redirect_url`` then reports the bound port.

    Parameters
    ----------
    redirect_url : str
        The absolute ``http://`` redirect URL registered with the
        authorization server.
    """

    def __init__(self, redirect_url: str) -> None:
        """Initialize the callback server."""
        parts = urlsplit(redirect_url)
        if parts.scheme != "http" or not parts.hostname:
            msg = f"Loopback redirect URL must be an absolute http:// URL, got '{redirect_url}'"
            raise ValueError(msg)
        self._configured_url = redirect_url
        self._host = parts.hostname
        self._port = _effective_port(parts) or 0
        self._redirect_url = redirect_url
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._response: asyncio.Future[QueryParams] | None = None

    @property
    def redirect_url(self) -> str:
        """The redirect URL, with the bound port once started."""
        return self._redirect_url

    @property
    def port(self) -> int:
        """The bound port (the configured port before ``start()``)."""
        if self._server is not None:
            return int(self._server.server_address[1])
        return self._port

    @property
    def is_running(self) -> bool:
        """Whether the listener socket is open."""
        return self._server is not None

    def _deliver(self, params: QueryParams) -> None:
        if self._response is not None and not self._response.done():
            self._response.set_result(params)

    def start(self) -> str:
        """Bind the listener and serve requests on a daemon thread.

        Returns
        -------
        str
            The redirect URL to send to the authorization server.

        Raises
        ------
        OSError
            If the address cannot be bound.
        """
        self._loop = asyncio.get_running_loop()
        self._response = self._loop.create_future()
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 redirects."""

            # Idle connections are dropped after this many seconds.
            timeout = REQUEST_TIMEOUT

            def do_GET(self) -> None:
                """Handle GET requests."""
                requested = urlsplit(f"http://{self.headers.get('Host', '')}{self.path}")

                if not matches_redirect_url(requested, server_ref._redirect_url):
                    logger.warning("Invalid OAuth2 login response received %s", requested.path)
                    self.send_error(404)
                    return

                params: QueryParams = dict(parse_qsl(requested.query, keep_blank_values=True))
                if params.get("error"):
                    error_msg = params.get("error_description") or params["error"]
                    self._send_html(_ERROR_HTML.format(error=html.escape(error_msg, quote=True)))
                else:
                    self._send_html(_CONFIRMATION_HTML)

                logger.debug("Received OAuth2 login response")
                loop = server_ref._loop
                if loop is not None and not loop.is_closed():
                    loop.call_soon_threadsafe(server_ref._deliver, params)

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the appauth logger."""
                if args:
                    logger.debug("OAuth callback server: %s", args[0] % args[1:])

        self._server = ThreadingHTTPServer((self._host, self._port), _CallbackHandler)
        self._server.daemon_threads = True
        if self._port == 0:
            self._redirect_url = with_port(self._configured_url, self.port)

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.05},
            daemon=True,
        )
        self._thread.start()

        logger.debug("Local OAuth2 redirect URL is %s", self._redirect_url)
        return self._redirect_url

    async def wait_for_response(self) -> QueryParams:
        """Wait for the first matching redirect request.

        Returns
        -------
        dict
            The redirect request's query parameters.
        """
        if self._response is None:
            msg = "Callback server has not been started"
            raise RuntimeError(msg)
        return await asyncio.shield(self._response)

    def _detach(self) -> tuple[ThreadingHTTPServer | None, threading.Thread | None]:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if self._response is not None and not self._response.done():
            self._response.cancel()
        return server, thread

    @staticmethod
    def _shutdown(server: ThreadingHTTPServer | None, thread: threading.Thread | None) -> None:
        if server is not None:
            server.shutdown()
            server.server_close()
        if thread is not None and thread.is_alive():
            thread.join(timeout=5)

    def stop(self) -> None:
        """Shut down the server and release the listening socket.

        Blocks until the serving thread exits; use ``aclose()`` from a
        coroutine.
        """
        self._shutdown(*self._detach())

    async def aclose(self) -> None:
        """Shut down the server without blocking the event loop."""
        server, thread = self._detach()
        if server is None and thread is None:
            return
        await asyncio.to_thread(self._shutdown, server, thread)

    async def __aenter__(self) -> LoopbackCallbackServer:
        """Start the server."""
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Stop the server."""
        await self.aclose()
