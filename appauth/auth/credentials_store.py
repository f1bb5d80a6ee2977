"""OAuth2 credential persistence.

The credential store keeps exactly one serialized ``Credentials`` value
in secure storage and never hands an invalid value back to its caller.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import ABC, abstractmethod

from ..types import Credentials
from .storage import SecureStorage, create_secure_storage


logger = logging.getLogger("appauth.auth")

STORE_KEY = "oauth2"


class CredentialStore(ABC):
    """Abstract base class for storing and retrieving OAuth2 credentials."""

    @abstractmethod
    async def store(self, credentials: Credentials) -> None:
        """Persist *credentials*, replacing any stored value.

        Raises
        ------
        StorageError
            If the underlying storage fails.
        """

    @abstractmethod
    async def restore(self) -> Credentials | None:
        """Load previously stored credentials.

        Returns
        -------
        Credentials or None
            The stored credentials, or None if none are stored or the
            stored value is invalid.

        Raises
        ------
        StorageError
            If the underlying storage fails.
        """

    @abstractmethod
    async def clear(self) -> None:
        """Remove any stored credentials.

        Raises
        ------
        StorageError
            If the underlying storage fails.
        """


class SecureCredentialStore(CredentialStore):
    """Credential store backed by a ``SecureStorage`` entry.

    Credentials are stored as JSON under a fixed key.

    Parameters
    ----------
    storage : SecureStorage, optional
        Storage backend (defaults to the OS keyring).
    key : str
        Storage entry key (default ``"oauth2"``).
    """

    def __init__(self, storage: SecureStorage | None = None, key: str = STORE_KEY) -> None:
        """Initialize the credential store."""
        self._storage = storage if storage is not None else create_secure_storage("keyring")
        self._key = key

    @property
    def storage(self) -> SecureStorage:
        """The underlying storage backend."""
        return self._storage

    async def store(self, credentials: Credentials) -> None:
        """Serialize and persist the credentials."""
        await self._storage.write(self._key, credentials.to_json())
        logger.debug("Stored OAuth2 credentials under '%s'", self._key)

    async def restore(self) -> Credentials | None:
        """Load, deserialize and validate the stored credentials.

        Unreadable data is treated as absent. Readable but invalid
        credentials (empty access token, no token endpoint) are cleared.
        """
        data = await self._storage.read(self._key)
        if data is None:
            return None

        try:
            credentials = Credentials.from_json(data)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable stored credentials: %s", exc)
            return None

        if not credentials.is_valid:
            logger.warning("Discarding invalid stored credentials")
            await self.clear()
            return None

        return credentials

    async def clear(self) -> None:
        """Delete the stored credentials entry."""
        await self._storage.delete(self._key)
        logger.debug("Cleared OAuth2 credentials under '%s'", self._key)
