"""FastAPI routes completing the browser login flow.

The page at the redirect URL is forwarded to the callback asset by
``WebLoginFlow.login_init``. The asset broadcasts its own URL to other
tabs and the opener window, and posts it to the relay endpoint, which
publishes it on the ``RedirectChannel`` the waiting flow listens to.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from urllib.parse import urlparse

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse

from .flow import CALLBACK_ASSET_PATH
from .web_channel import CHANNEL_NAME, MESSAGE_PREFIX, RedirectChannel, get_redirect_channel


logger = logging.getLogger("appauth.auth")

CALLBACK_RELAY_PATH = "/assets/appauth/callback"

_CALLBACK_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Completing login</title></head>
<body>
<p id="status">Completing login&hellip;</p>
<script>
(function () {
  var url = window.location.href;
  try {
    new BroadcastChannel("__CHANNEL__").postMessage(url);
  } catch (e) {}
  if (window.opener) {
    try {
      window.opener.postMessage("__PREFIX__" + url, window.location.origin);
    } catch (e) {}
  }
  fetch("__RELAY__", {
    method: "POST",
    credentials: "same-origin",
    headers: { "Content-Type": "application/json" },
    body: JSON.stringify({ url: url })
  }).finally(function () {
    document.getElementById("status").textContent =
      "Login complete. You can close this window.";
    window.close();
  });
})();
</script>
</body>
</html>"""


def render_callback_page() -> str:
    """Return the callback asset's HTML."""
    return (
        _CALLBACK_HTML.replace("__CHANNEL__", CHANNEL_NAME)
        .replace("__PREFIX__", MESSAGE_PREFIX)
        .replace("__RELAY__", CALLBACK_RELAY_PATH)
    )


def _verify_csrf_origin(request: Request, *, trusted_origins: list[str] | None = None) -> bool:
    """Verify that a POST request originates from a trusted origin.

    Checks the ``Origin`` header first, then falls back to ``Referer``.

    Parameters
    ----------
    request : Request
        The incoming request.
    trusted_origins : list[str] | None
        Allowed origins. If ``None`` or empty, only same-origin requests
        are allowed.
    """
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")

    source_origin: str | None = None
    if origin and origin != "null":
        source_origin = origin.rstrip("/")
    elif referer:
        parsed = urlparse(referer)
        if parsed.scheme and parsed.netloc:
            source_origin = f"{parsed.scheme}://{parsed.netloc}"

    if source_origin is None:
        return False

    if trusted_origins:
        return source_origin in [o.rstrip("/") for o in trusted_origins]

    request_origin = f"{request.url.scheme}://{request.url.netloc}".rstrip("/")
    return source_origin == request_origin


def create_callback_router(
    channel: RedirectChannel | None = None,
    trusted_origins: list[str] | None = None,
) -> APIRouter:
    """Create a FastAPI router serving the callback asset and relay.

    Parameters
    ----------
    channel : RedirectChannel, optional
        Channel to publish redirect URLs on (default: process-wide).
    trusted_origins : list[str], optional
        Origins allowed to post to the relay (default: same origin).

    Returns
    -------
    APIRouter
        Router with the callback routes.
    """
    redirect_channel = channel if channel is not None else get_redirect_channel()
    router = APIRouter(tags=["authentication"])

    @router.get(CALLBACK_ASSET_PATH)
    async def callback_page() -> HTMLResponse:
        """Serve the page that relays the redirect URL."""
        return HTMLResponse(
            render_callback_page(),
            headers={
                "Cache-Control": "no-store",
                "Content-Security-Policy": (
                    "default-src 'none'; script-src 'unsafe-inline'; connect-src 'self'"
                ),
                "X-Content-Type-Options": "nosniff",
            },
        )

    @router.post(CALLBACK_RELAY_PATH)
    async def callback_relay(request: Request) -> JSONResponse:
        """Publish the redirect URL posted by the callback page."""
        if not _verify_csrf_origin(request, trusted_origins=trusted_origins):
            return JSONResponse(
                status_code=403,
                content={
                    "error": "csrf_failed",
                    "error_description": "Origin verification failed",
                },
            )

        try:
            body = await request.json()
        except ValueError:
            body = None

        url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(url, str) or not url:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "invalid_request",
                    "error_description": "Expected a JSON body with a 'url' string",
                },
            )

        delivered = redirect_channel.publish(url)
        if not delivered:
            logger.warning("Redirect URL received but no login flow is waiting")
        return JSONResponse(content={"delivered": delivered})

    return router
