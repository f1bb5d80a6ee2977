"""appauth exception hierarchy.

All appauth-specific exceptions inherit from AppAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class AppAuthException(Exception):
    """Base exception for all appauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize appauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, key, backend, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        ctx = {k: v for k, v in self.context.items() if v is not None}
        if ctx:
            rendered = ", ".join(f"{k}={v!r}" for k, v in ctx.items())
            return f"{self.message} ({rendered})"
        return self.message


class ConfigurationError(AppAuthException):
    """Required configuration is missing or invalid.

    Raised when an auth provider is constructed without its required
    endpoints or client id. Never retried.
    """

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize configuration error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The configuration key that caused the error.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class StorageError(AppAuthException):
    """Credential persistence failed.

    Raised on I/O failures of the secure storage backend.
    """

    def __init__(self, message: str, backend: str | None = None, **context: Any) -> None:
        """Initialize storage error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        backend : str, optional
            The storage backend that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, backend=backend, **context)
        self.backend = backend


class AuthenticationError(AppAuthException):
    """Base exception for all authentication failures.

    Raised when a login attempt fails at the protocol level. Carries the
    OAuth2 error code and description reported by the server, when any.
    """

    def __init__(
        self,
        message: str,
        error: str | None = None,
        description: str | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str, optional
            The OAuth2 error code (e.g. ``"invalid_grant"``).
        description : str, optional
            The ``error_description`` sent by the server.
        provider : str, optional
            The auth provider name.
        **context : Any
            Additional context.
        """
        super().__init__(message, error=error, provider=provider, **context)
        self.error = error
        self.description = description
        self.provider = provider


class AuthorizationError(AuthenticationError):
    """The authorization server rejected the request.

    Raised for an ``error`` parameter on the redirect or an error body
    from the token endpoint.
    """

    def __init__(
        self,
        error: str,
        description: str | None = None,
        uri: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authorization error.

        Parameters
        ----------
        error : str
            The OAuth2 error code.
        description : str, optional
            The ``error_description`` sent by the server.
        uri : str, optional
            The ``error_uri`` sent by the server.
        **context : Any
            Additional context.
        """
        message = f"OAuth authorization error ({error})"
        if description:
            message = f"{message}: {description}"
        super().__init__(message, error=error, description=description, **context)
        self.uri = uri


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when the token endpoint cannot be reached or returns a
    malformed response.
    """


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when credentials cannot be refreshed (no refresh token or
    token endpoint) or the refresh request fails.
    """
