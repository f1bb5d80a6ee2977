"""OAuth2 authentication for appauth.

Provides the OAuth2 provider state machine, platform login flows,
the authorization code grant, and credential persistence.
"""

from __future__ import annotations

from .credentials_store import STORE_KEY, CredentialStore, SecureCredentialStore
from .dummy import DummyAuthProvider
from .flow import (
    BrowserHost,
    LoginFlow,
    LoginFlowListener,
    LoopbackLoginFlow,
    UnsupportedLoginFlow,
    WebLoginFlow,
    WindowHost,
    detect_platform,
    resolve_platform,
    select_login_flow,
)
from .grant import AuthorizationCodeGrant, OAuth2Client
from .operation import LoginOperation
from .pkce import PKCEChallenge
from .provider import OAuth2Provider
from .storage import (
    KeyringSecureStorage,
    MemorySecureStorage,
    SecureStorage,
    create_secure_storage,
)
from .web_channel import RedirectChannel, get_redirect_channel


__all__ = [
    "STORE_KEY",
    "AuthorizationCodeGrant",
    "BrowserHost",
    "CredentialStore",
    "DummyAuthProvider",
    "KeyringSecureStorage",
    "LoginFlow",
    "LoginFlowListener",
    "LoginOperation",
    "LoopbackLoginFlow",
    "MemorySecureStorage",
    "OAuth2Client",
    "OAuth2Provider",
    "PKCEChallenge",
    "RedirectChannel",
    "SecureCredentialStore",
    "SecureStorage",
    "UnsupportedLoginFlow",
    "WebLoginFlow",
    "WindowHost",
    "create_secure_storage",
    "detect_platform",
    "get_redirect_channel",
    "resolve_platform",
    "select_login_flow",
]
