"""OAuth2 Authorization Code grant and authenticated client.

``AuthorizationCodeGrant`` builds the authorization URL and exchanges the
redirect's code for credentials; ``OAuth2Client`` wraps the resulting
credentials, sends authenticated requests and refreshes them.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import enum
import logging
import secrets
import time

from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlencode

import httpx

from ..exceptions import AuthenticationError, AuthorizationError, TokenError, TokenRefreshError
from ..log import redact_sensitive_data
from ..types import Credentials
from .pkce import PKCEChallenge


logger = logging.getLogger("appauth.auth")

# Tokens are treated as expired this many seconds before the server says so.
EXPIRATION_GRACE_SECONDS = 10.0

_TOKEN_TIMEOUT = 30.0


def _new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=_TOKEN_TIMEOUT)


def _parse_token_response(
    resp: httpx.Response,
    token_endpoint: str,
    requested_scopes: Sequence[str],
    start_time: float,
    error_cls: type[TokenError] = TokenError,
) -> Credentials:
    """Turn a token endpoint response into credentials.

    Raises
    ------
    AuthorizationError
        If the server answered with an OAuth2 error body.
    TokenError
        If the response is not a valid token response.
    """
    try:
        body = resp.json()
    except ValueError as exc:
        msg = f"Token endpoint returned invalid JSON (status {resp.status_code})"
        raise error_cls(msg, error="invalid_response") from exc

    if not isinstance(body, dict):
        msg = "Token endpoint response must be a JSON object"
        raise error_cls(msg, error="invalid_response")

    if body.get("error"):
        raise AuthorizationError(
            str(body["error"]),
            description=body.get("error_description"),
            uri=body.get("error_uri"),
        )

    if resp.status_code != 200:
        msg = f"Token endpoint returned status {resp.status_code}"
        raise error_cls(msg, error="invalid_response")

    logger.debug("Token response: %s", redact_sensitive_data(body))

    access_token = body.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        msg = "Token response is missing 'access_token'"
        raise error_cls(msg, error="invalid_response")

    token_type = str(body.get("token_type", ""))
    if token_type.lower() != "bearer":
        msg = f"Unsupported token type '{token_type}'"
        raise error_cls(msg, error="invalid_response")

    expiration: float | None = None
    expires_in = body.get("expires_in")
    if expires_in is not None:
        try:
            expiration = start_time + float(expires_in) - EXPIRATION_GRACE_SECONDS
        except (TypeError, ValueError) as exc:
            msg = f"Invalid 'expires_in' value: {expires_in!r}"
            raise error_cls(msg, error="invalid_response") from exc

    scope = body.get("scope")
    scopes = str(scope).split() if scope else list(requested_scopes)

    return Credentials(
        access_token=access_token,
        refresh_token=body.get("refresh_token"),
        id_token=body.get("id_token"),
        token_endpoint=token_endpoint,
        expiration=expiration,
        scopes=scopes,
    )


class _GrantState(enum.Enum):
    INITIAL = "initial"
    AWAITING_RESPONSE = "awaiting_response"
    FINISHED = "finished"


class AuthorizationCodeGrant:
    """A single-use OAuth2 Authorization Code grant.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    authorization_endpoint : str
        The server's authorization endpoint.
    token_endpoint : str
        The server's token endpoint.
    secret : str, optional
        The client secret (None for public clients).
    http_client : httpx.AsyncClient, optional
        Shared HTTP client. A private one is created if omitted.
    use_pkce : bool
        Whether to send a PKCE challenge (default ``True``).
    """

    def __init__(
        self,
        client_id: str,
        authorization_endpoint: str,
        token_endpoint: str,
        secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        use_pkce: bool = True,
    ) -> None:
        """Initialize the grant."""
        self.client_id = client_id
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.secret = secret
        self._http_client = http_client
        self._use_pkce = use_pkce

        self._state = _GrantState.INITIAL
        self._redirect_url: str | None = None
        self._scopes: list[str] = []
        self._csrf_state: str | None = None
        self._pkce: PKCEChallenge | None = None

    def get_authorization_url(
        self,
        redirect_url: str,
        scopes: Sequence[str] | None = None,
        state: str | None = None,
    ) -> str:
        """Build the URL the user is sent to for authorization.

        Parameters
        ----------
        redirect_url : str
            Where the server redirects back to with the code.
        scopes : Sequence[str], optional
            Scopes to request.
        state : str, optional
            CSRF nonce; a random one is generated if omitted.

        Returns
        -------
        str
            The full authorization URL.
        """
        if self._state is not _GrantState.INITIAL:
            msg = "The authorization URL has already been generated for this grant"
            raise RuntimeError(msg)

        self._redirect_url = redirect_url
        self._scopes = list(scopes or [])
        self._csrf_state = state or secrets.token_urlsafe(32)

        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_url,
            "state": self._csrf_state,
        }
        if self._scopes:
            params["scope"] = " ".join(self._scopes)
        if self._use_pkce:
            self._pkce = PKCEChallenge.generate()
            params["code_challenge"] = self._pkce.challenge
            params["code_challenge_method"] = self._pkce.method

        self._state = _GrantState.AWAITING_RESPONSE
        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"

    async def handle_authorization_response(self, params: Mapping[str, str]) -> OAuth2Client:
        """Process the redirect's query parameters and exchange the code.

        Parameters
        ----------
        params : Mapping[str, str]
            Query parameters of the redirect request.

        Returns
        -------
        OAuth2Client
            A client holding the exchanged credentials.

        Raises
        ------
        AuthorizationError
            If the server reported an error on the redirect or at the
            token endpoint.
        AuthenticationError
            If the response is malformed or the state does not match.
        TokenError
            If the token endpoint cannot be reached.
        """
        if self._state is not _GrantState.AWAITING_RESPONSE:
            msg = "The grant is not waiting for an authorization response"
            raise RuntimeError(msg)
        self._state = _GrantState.FINISHED

        if self._csrf_state is not None and params.get("state") != self._csrf_state:
            msg = "State parameter mismatch in authorization response"
            raise AuthenticationError(msg, error="invalid_state")

        if params.get("error"):
            raise AuthorizationError(
                params["error"],
                description=params.get("error_description"),
                uri=params.get("error_uri"),
            )

        code = params.get("code")
        if not code:
            msg = "No authorization code in authorization response"
            raise AuthenticationError(msg, error="invalid_response")

        return await self._exchange_code(code)

    async def _exchange_code(self, code: str) -> OAuth2Client:
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_url or "",
            "client_id": self.client_id,
        }
        if self.secret:
            data["client_secret"] = self.secret
        if self._pkce is not None:
            data["code_verifier"] = self._pkce.verifier

        start_time = time.time()
        owns_client = self._http_client is None
        client = self._http_client or _new_http_client()
        try:
            resp = await client.post(
                self.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise TokenError(msg, error="request_failed") from exc
        finally:
            if owns_client:
                await client.aclose()

        credentials = _parse_token_response(resp, self.token_endpoint, self._scopes, start_time)
        logger.debug("Authorization code exchanged for credentials")
        return OAuth2Client(
            credentials,
            identifier=self.client_id,
            secret=self.secret,
            http_client=self._http_client,
        )

    def close(self) -> None:
        """Abandon the grant; further responses are rejected."""
        self._state = _GrantState.FINISHED


class OAuth2Client:
    """Holds OAuth2 credentials and the means to use and refresh them.

    Parameters
    ----------
    credentials : Credentials
        The current credentials.
    identifier : str, optional
        Client ID sent with refresh requests.
    secret : str, optional
        Client secret sent with refresh requests.
    http_client : httpx.AsyncClient, optional
        Shared HTTP client. When omitted the client creates its own and
        closes it in ``close()``.
    """

    def __init__(
        self,
        credentials: Credentials,
        identifier: str | None = None,
        secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client."""
        self._credentials = credentials
        self.identifier = identifier
        self.secret = secret
        self._owns_http_client = http_client is None
        self._http_client = http_client
        self._closed = False

    @property
    def credentials(self) -> Credentials:
        """The current credentials."""
        return self._credentials

    @property
    def is_closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    def _client(self) -> httpx.AsyncClient:
        if self._closed:
            msg = "The OAuth2 client has been closed"
            raise RuntimeError(msg)
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = _new_http_client()
            self._owns_http_client = True
        return self._http_client

    async def refresh_credentials(self, scopes: Sequence[str] | None = None) -> Credentials:
        """Exchange the refresh token for new credentials.

        Parameters
        ----------
        scopes : Sequence[str], optional
            Scopes to request for the new access token.

        Returns
        -------
        Credentials
            The refreshed credentials, also kept on the client.

        Raises
        ------
        TokenRefreshError
            If the credentials cannot be refreshed or the request fails.
        AuthorizationError
            If the server rejects the refresh token.
        """
        current = self._credentials
        if not current.can_refresh or current.token_endpoint is None:
            msg = "Credentials have no refresh token or token endpoint and cannot be refreshed"
            raise TokenRefreshError(msg, error="cannot_refresh")

        requested = list(scopes) if scopes is not None else list(current.scopes)
        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token or "",
        }
        if requested:
            data["scope"] = " ".join(requested)
        if self.identifier:
            data["client_id"] = self.identifier
        if self.secret:
            data["client_secret"] = self.secret

        start_time = time.time()
        try:
            resp = await self._client().post(
                current.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Token refresh request failed: {exc}"
            raise TokenRefreshError(msg, error="request_failed") from exc

        refreshed = _parse_token_response(
            resp,
            current.token_endpoint,
            requested,
            start_time,
            error_cls=TokenRefreshError,
        )
        if refreshed.refresh_token is None:
            refreshed.refresh_token = current.refresh_token
        if refreshed.id_token is None:
            refreshed.id_token = current.id_token

        self._credentials = refreshed
        logger.info("OAuth2 credentials refreshed")
        return refreshed

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, refreshing expired credentials first.

        Parameters
        ----------
        method : str
            HTTP method.
        url : str
            Request URL.
        **kwargs : Any
            Passed to ``httpx.AsyncClient.request``.

        Returns
        -------
        httpx.Response
            The response.
        """
        if self._credentials.is_expired:
            if not self._credentials.can_refresh:
                msg = "Access token has expired and cannot be refreshed"
                raise TokenRefreshError(msg, error="expired")
            await self.refresh_credentials()

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self._credentials.access_token}"
        return await self._client().request(method, url, headers=headers, **kwargs)

    async def close(self) -> None:
        """Close the client; owned HTTP connections are released."""
        if self._closed:
            return
        self._closed = True
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
        self._http_client = None
