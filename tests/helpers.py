"""Shared test helpers: fake token endpoint, scripted login flow, recorders."""

from __future__ import annotations

import asyncio
import json
import time

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx

from appauth.auth.flow import LoginFlow, LoginFlowListener
from appauth.auth.grant import AuthorizationCodeGrant, OAuth2Client
from appauth.config import AuthSettings
from appauth.types import Credentials, Platform


AUTHORIZATION_ENDPOINT = "https://idp.example.com/oauth2/authorize"
TOKEN_ENDPOINT = "https://idp.example.com/oauth2/token"
CLIENT_ID = "test-client"

AUTH_CONFIG: dict[str, Any] = {
    "auth": {
        "authorizationEndpoint": AUTHORIZATION_ENDPOINT,
        "tokenEndpoint": TOKEN_ENDPOINT,
        "clientId": CLIENT_ID,
        "scopes": ["openid", "profile"],
        "storage": "memory",
    }
}


def make_credentials(
    access_token: str = "at-1",
    refresh_token: str | None = "rt-1",
    expires_in: float | None = 3600,
    scopes: list[str] | None = None,
) -> Credentials:
    """Build credentials for the fake token endpoint."""
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        id_token="id-token",
        token_endpoint=TOKEN_ENDPOINT,
        expiration=time.time() + expires_in if expires_in is not None else None,
        scopes=scopes if scopes is not None else ["openid", "profile"],
    )


# ── Fake token endpoint ─────────────────────────────────────────────


def token_response(
    access_token: str = "at-new",
    refresh_token: str | None = "rt-new",
    expires_in: int | None = 3600,
    **extra: Any,
) -> dict[str, Any]:
    """Build a successful token endpoint JSON body."""
    body: dict[str, Any] = {"access_token": access_token, "token_type": "Bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    body.update(extra)
    return body


class FakeTokenEndpoint:
    """httpx.MockTransport handler recording token requests.

    Responses are served from ``responses`` in order; the last one is
    repeated. A response may be a dict (JSON, status 200), an
    ``httpx.Response`` or an exception to raise.
    """

    def __init__(self) -> None:
        self.responses: list[Any] = [token_response()]
        self.requests: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(dict(parse_qsl(request.content.decode("utf-8"))))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, content=json.dumps(response), headers={"Content-Type": "application/json"})

    @property
    def last(self) -> dict[str, str]:
        """Form fields of the most recent request."""
        return self.requests[-1]


# ── Scripted login flow ─────────────────────────────────────────────


class ScriptedLoginFlow(LoginFlow):
    """Login flow returning a prepared outcome without user interaction.

    ``outcome`` is an ``OAuth2Client``, None, an exception to raise, or a
    callable producing one of those. With ``block=True`` the flow waits
    until it is cancelled.
    """

    platform = Platform.NATIVE

    def __init__(self, outcome: Any = None, block: bool = False) -> None:
        super().__init__(open_browser=False)
        self.outcome = outcome
        self.block = block
        self.calls = 0
        self.cancelled = 0
        self.scopes: list[str] | None = None
        self.listeners: list[LoginFlowListener | None] = []

    def redirect_url(self, settings: AuthSettings) -> str:
        return "http://127.0.0.1:0/login/oidc/callback"

    async def _run(
        self,
        settings: AuthSettings,
        grant: AuthorizationCodeGrant,
        scopes: list[str],
        listener: LoginFlowListener | None,
    ) -> OAuth2Client | None:
        self.calls += 1
        self.scopes = scopes
        self.listeners.append(listener)
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        outcome = self.outcome() if callable(self.outcome) else self.outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def client_for(credentials: Credentials, http_client: httpx.AsyncClient | None = None) -> OAuth2Client:
    """Wrap credentials in a client for the scripted flow."""
    return OAuth2Client(credentials, identifier=CLIENT_ID, http_client=http_client)


class ControllerRecorder:
    """Records controller callbacks; users are the claims dicts."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.logins: list[dict[str, Any]] = []
        self.logouts: list[dict[str, Any]] = []

    def on_create_user(self, claims: dict[str, Any]) -> dict[str, Any]:
        user = dict(claims)
        self.created.append(user)
        return user

    def on_login(self, user: dict[str, Any]) -> None:
        self.logins.append(user)

    def on_logout(self, user: dict[str, Any]) -> None:
        self.logouts.append(user)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Yield to the loop until *predicate* holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            msg = "Condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)
