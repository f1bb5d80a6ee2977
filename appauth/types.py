"""Type definitions shared across appauth.

Credentials, login state and platform enums used by the OAuth2
provider, its login flows and the credential store.
"""

from __future__ import annotations

import json
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LoginState(str, Enum):
    """State of an OAuth2 provider's login process."""

    NOT_LOGGED_IN = "not_logged_in"
    IN_LOGIN_PROCESS = "in_login_process"
    LOGGED_IN = "logged_in"


class Platform(str, Enum):
    """Platform families that select a login flow."""

    WEB = "web"
    NATIVE = "native"
    UNSUPPORTED = "unsupported"


# Type aliases for clarity
Claims = dict[str, Any]
QueryParams = dict[str, str]


@dataclass
class Credentials:
    """OAuth2 credentials for an authenticated session.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    refresh_token : str or None
        Refresh token used to obtain new access tokens.
    id_token : str or None
        OIDC ID token (JWT), if the server issued one.
    token_endpoint : str or None
        Token endpoint the credentials are refreshed against.
    expiration : float or None
        Unix timestamp after which the access token is expired.
    scopes : list[str]
        Scopes granted to the access token.
    """

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_endpoint: str | None = None
    expiration: float | None = None
    scopes: list[str] = field(default_factory=list)

    @property
    def can_refresh(self) -> bool:
        """Whether the credentials carry enough to be refreshed."""
        return self.refresh_token is not None and self.token_endpoint is not None

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        if self.expiration is None:
            return False
        return time.time() >= self.expiration

    @property
    def is_valid(self) -> bool:
        """Whether the credentials are usable at all."""
        return bool(self.access_token) and bool(self.token_endpoint)

    def to_claims(self) -> Claims:
        """Build the claims mapping handed to the user factory."""
        return {
            "access_token": self.access_token,
            "id_token": self.id_token,
            "can_refresh": self.can_refresh,
            "scopes": list(self.scopes),
            "expiration": self.expiration,
        }

    def to_json(self) -> str:
        """Serialize the credentials to JSON."""
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "id_token": self.id_token,
                "token_endpoint": self.token_endpoint,
                "expiration": self.expiration,
                "scopes": list(self.scopes),
            }
        )

    @classmethod
    def from_json(cls, data: str) -> Credentials:
        """Deserialize credentials from JSON.

        Raises
        ------
        ValueError
            If the data is not a JSON object holding credentials.
        """
        obj = json.loads(data)
        if not isinstance(obj, dict) or "access_token" not in obj:
            msg = "Credentials JSON must be an object with an 'access_token'"
            raise ValueError(msg)
        for name in ("refresh_token", "id_token", "token_endpoint"):
            if obj.get(name) is not None and not isinstance(obj[name], str):
                msg = f"Credentials '{name}' must be a string"
                raise ValueError(msg)
        access_token = obj["access_token"]
        if access_token is not None and not isinstance(access_token, str):
            msg = "Credentials 'access_token' must be a string"
            raise ValueError(msg)
        scopes = obj.get("scopes") or []
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            msg = "Credentials 'scopes' must be a list of strings"
            raise ValueError(msg)
        expiration = obj.get("expiration")
        # bool is an int subclass
        if expiration is not None and (isinstance(expiration, bool) or not isinstance(expiration, (int, float))):
            msg = "Credentials 'expiration' must be a number"
            raise ValueError(msg)
        return cls(
            access_token=access_token or "",
            refresh_token=obj.get("refresh_token"),
            id_token=obj.get("id_token"),
            token_endpoint=obj.get("token_endpoint"),
            expiration=float(expiration) if expiration is not None else None,
            scopes=list(scopes),
        )
