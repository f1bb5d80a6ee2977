"""Authentication service wiring.

``AuthController`` carries the application's user factory and lifecycle
callbacks, ``AuthProvider`` is the interface every provider implements,
and ``AuthService`` combines the two for the UI layer.
``configure_auth`` builds the service from configuration.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .config import AuthSettings, get_settings
from .exceptions import ConfigurationError
from .notifier import ChangeNotifier, Listener
from .types import Claims


if TYPE_CHECKING:
    from .auth.flow import LoginFlowListener


logger = logging.getLogger("appauth")

UserT = TypeVar("UserT")
ResourceT = TypeVar("ResourceT")


@dataclass
class AuthController(Generic[UserT, ResourceT]):
    """Application callbacks bound to an auth provider.

    Attributes
    ----------
    on_create_user : callable
        Builds the application's user from the login claims.
    on_login : callable, optional
        Called with the user after every successful login.
    on_logout : callable, optional
        Called with the user before it is discarded on logout.
    on_grant_resource : callable, optional
        Application policy ``(user or None, resource) -> bool`` checked in
        front of the provider's own grant check.
    """

    on_create_user: Callable[[Claims], UserT]
    on_login: Callable[[UserT], None] | None = None
    on_logout: Callable[[UserT], None] | None = None
    on_grant_resource: Callable[[UserT | None, ResourceT], bool] | None = None


class AuthProvider(ChangeNotifier, ABC, Generic[UserT, ResourceT]):
    """Base class for authentication providers.

    Providers notify their listeners after every login state change.
    """

    def __init__(self, controller: AuthController[UserT, ResourceT] | None = None) -> None:
        """Initialize the provider, optionally bound to *controller*."""
        super().__init__()
        self._controller = controller

    @property
    def controller(self) -> AuthController[UserT, ResourceT]:
        """The bound controller.

        Raises
        ------
        RuntimeError
            If no controller has been bound yet.
        """
        if self._controller is None:
            msg = f"{type(self).__name__} has no AuthController bound"
            raise RuntimeError(msg)
        return self._controller

    def bind_controller(self, controller: AuthController[UserT, ResourceT]) -> None:
        """Attach the application's controller."""
        self._controller = controller

    @property
    @abstractmethod
    def local_user(self) -> UserT | None:
        """The logged in user, or None."""

    @abstractmethod
    def is_resource_granted(self, resource: ResourceT) -> bool:
        """Whether the provider grants access to *resource*."""

    @abstractmethod
    async def login(self, listener: LoginFlowListener | None = None) -> bool:
        """Log in; returns whether a user is logged in afterwards."""

    @abstractmethod
    async def logout(self) -> None:
        """Log out the current user, if any."""

    async def initialize(self) -> None:
        """Startup hook, run once before the application starts."""

    async def aclose(self) -> None:
        """Release resources held by the provider."""


class AuthService(Generic[UserT, ResourceT]):
    """Facade the UI layer uses for authentication.

    Parameters
    ----------
    controller : AuthController
        Application callbacks; bound to *provider*.
    provider : AuthProvider
        The authentication provider.
    """

    def __init__(
        self,
        controller: AuthController[UserT, ResourceT],
        provider: AuthProvider[UserT, ResourceT],
    ) -> None:
        """Initialize the service and bind the controller."""
        self._controller = controller
        self._provider = provider
        provider.bind_controller(controller)

    @property
    def provider(self) -> AuthProvider[UserT, ResourceT]:
        """The underlying provider."""
        return self._provider

    @property
    def controller(self) -> AuthController[UserT, ResourceT]:
        """The application's controller."""
        return self._controller

    @property
    def local_user(self) -> UserT | None:
        """The logged in user, or None."""
        return self._provider.local_user

    def is_resource_granted(self, resource: ResourceT) -> bool:
        """Check the application's policy, then the provider's grant."""
        if self._controller.on_grant_resource is not None and not self._controller.on_grant_resource(
            self.local_user, resource
        ):
            return False
        return self._provider.is_resource_granted(resource)

    async def login(self, listener: LoginFlowListener | None = None) -> bool:
        """Log in through the provider."""
        return await self._provider.login(listener)

    async def logout(self) -> None:
        """Log out through the provider."""
        await self._provider.logout()

    def add_listener(self, listener: Listener) -> None:
        """Subscribe to login state changes."""
        self._provider.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        """Unsubscribe from login state changes."""
        self._provider.remove_listener(listener)

    async def initialize(self) -> None:
        """Run the provider's startup hook."""
        await self._provider.initialize()

    async def aclose(self) -> None:
        """Release the provider's resources."""
        await self._provider.aclose()


def create_provider_from_settings(settings: AuthSettings, **kwargs: Any) -> AuthProvider[Any, Any]:
    """Create the provider named by ``auth.provider``.

    Parameters
    ----------
    settings : AuthSettings
        Auth configuration.
    **kwargs : Any
        Extra keyword arguments for ``OAuth2Provider`` (credential store,
        login flow, HTTP client, logger).

    Returns
    -------
    AuthProvider
        The configured provider.

    Raises
    ------
    ConfigurationError
        If the provider is unknown or its required settings are missing.
    """
    name = (settings.provider or "").lower()
    if name == "oauth2":
        from .auth.provider import OAuth2Provider

        return OAuth2Provider(settings, **kwargs)
    if name == "dummy":
        from .auth.dummy import DummyAuthProvider

        return DummyAuthProvider()

    msg = f"Auth provider '{settings.provider}' is unsupported"
    raise ConfigurationError(msg, key="auth.provider")


def configure_auth(
    controller: AuthController[UserT, ResourceT],
    *,
    config: Mapping[str, Any] | None = None,
    settings: AuthSettings | None = None,
    provider: AuthProvider[UserT, ResourceT] | None = None,
    **provider_kwargs: Any,
) -> AuthService[UserT, ResourceT]:
    """Build an ``AuthService`` for *controller*.

    Without an explicit *provider*, one is created from *config* (a
    nested or dotted mapping), *settings*, or the global settings, in
    that order.

    Raises
    ------
    ConfigurationError
        If no auth configuration is available or it is invalid.
    """
    if provider is None:
        if config is not None:
            settings = AuthSettings.from_mapping(config)
        elif settings is None:
            settings = get_settings().auth
        if settings is None:
            msg = "Auth configuration is missing"
            raise ConfigurationError(msg, key="auth.provider")
        provider = create_provider_from_settings(settings, **provider_kwargs)
        logger.debug("Configured auth provider %s", type(provider).__name__)

    return AuthService(controller, provider)
