"""Provider that logs in without any credentials, for development."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from ..service import AuthController, AuthProvider, ResourceT, UserT


if TYPE_CHECKING:
    from .flow import LoginFlowListener


logger = logging.getLogger("appauth.auth")


class DummyAuthProvider(AuthProvider[UserT, ResourceT]):
    """Logs in immediately with a user built from empty claims.

    Every resource is granted, whether or not a user is logged in.
    """

    def __init__(self, controller: AuthController[UserT, ResourceT] | None = None) -> None:
        """Initialize the provider."""
        super().__init__(controller)
        self._user: UserT | None = None

    @property
    def local_user(self) -> UserT | None:
        """The logged in user, or None."""
        return self._user

    def is_resource_granted(self, resource: ResourceT) -> bool:
        """Grant everything."""
        return True

    async def login(self, listener: LoginFlowListener | None = None) -> bool:
        """Log in, replacing any current user."""
        if self._user is not None:
            await self.logout()

        self._user = self.controller.on_create_user({})
        logger.info("Dummy auth provider logged in")
        if self.controller.on_login is not None:
            self.controller.on_login(self._user)
        self.notify_listeners()
        return True

    async def logout(self) -> None:
        """Log out the current user."""
        if self._user is None:
            logger.error("Dummy auth provider cannot log out, not logged in")
            return

        if self.controller.on_logout is not None:
            self.controller.on_logout(self._user)
        logger.info("Dummy auth provider logged out")
        self._user = None
        self.notify_listeners()
