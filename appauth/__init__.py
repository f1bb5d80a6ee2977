"""appauth - pluggable authentication for UI applications.

Wires an authentication provider into an application and implements the
OAuth2 Authorization Code flow with platform-specific redirect handling,
credential persistence and token refresh.
"""

from __future__ import annotations

from .auth import (
    DummyAuthProvider,
    LoginFlowListener,
    OAuth2Client,
    OAuth2Provider,
    SecureCredentialStore,
)
from .config import AppAuthSettings, AuthSettings, LogSettings, get_settings
from .exceptions import (
    AppAuthException,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    StorageError,
    TokenError,
    TokenRefreshError,
)
from .notifier import ChangeNotifier
from .service import (
    AuthController,
    AuthProvider,
    AuthService,
    configure_auth,
    create_provider_from_settings,
)
from .types import Credentials, LoginState, Platform


__version__ = "0.1.0"

__all__ = [
    "AppAuthException",
    "AppAuthSettings",
    "AuthController",
    "AuthProvider",
    "AuthService",
    "AuthSettings",
    "AuthenticationError",
    "AuthorizationError",
    "ChangeNotifier",
    "ConfigurationError",
    "Credentials",
    "DummyAuthProvider",
    "LogSettings",
    "LoginFlowListener",
    "LoginState",
    "OAuth2Client",
    "OAuth2Provider",
    "Platform",
    "SecureCredentialStore",
    "StorageError",
    "TokenError",
    "TokenRefreshError",
    "__version__",
    "configure_auth",
    "create_provider_from_settings",
    "get_settings",
]
