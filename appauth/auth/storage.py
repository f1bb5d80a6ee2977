"""Pluggable secure storage backends.

Provides the SecureStorage ABC, the primitive the credential store
persists serialized credentials into, with in-memory and OS keyring
implementations.
"""

from __future__ import annotations

import asyncio
import logging

from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import StorageError


logger = logging.getLogger("appauth.auth")


class SecureStorage(ABC):
    """Abstract base class for a secure key/value string store.

    All methods are async to support both local and OS-backed stores.
    """

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Read the value stored under *key*.

        Parameters
        ----------
        key : str
            Entry identifier.

        Returns
        -------
        str or None
            The stored value, or None if absent.
        """

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value.

        Parameters
        ----------
        key : str
            Entry identifier.
        value : str
            The value to persist.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the entry for *key*. Deleting a missing entry is a no-op.

        Parameters
        ----------
        key : str
            Entry identifier.
        """


class MemorySecureStorage(SecureStorage):
    """In-memory storage for development, tests and single-process use."""

    def __init__(self) -> None:
        """Initialize the memory storage."""
        self._entries: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def read(self, key: str) -> str | None:
        """Read a value from memory."""
        async with self._lock:
            return self._entries.get(key)

    async def write(self, key: str, value: str) -> None:
        """Write a value to memory."""
        async with self._lock:
            self._entries[key] = value

    async def delete(self, key: str) -> None:
        """Delete a value from memory."""
        async with self._lock:
            self._entries.pop(key, None)


class KeyringSecureStorage(SecureStorage):
    """OS keyring-backed storage for persistent native credentials.

    Keyring calls block, so they run in the default executor.

    Parameters
    ----------
    service_name : str
        Service name for keyring entries (default "appauth").
    """

    def __init__(self, service_name: str = "appauth") -> None:
        """Initialize the keyring storage."""
        import keyring
        import keyring.errors

        self._service_name = service_name
        self._keyring = keyring
        self._errors = keyring.errors

    async def _call(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, self._service_name, *args)
        except self._errors.KeyringError as exc:
            msg = f"Keyring access failed: {exc}"
            raise StorageError(msg, backend="keyring") from exc

    async def read(self, key: str) -> str | None:
        """Read a value from the OS keyring."""
        return await self._call(self._keyring.get_password, key)  # type: ignore[no-any-return]

    async def write(self, key: str, value: str) -> None:
        """Write a value to the OS keyring."""
        await self._call(self._keyring.set_password, key, value)

    async def delete(self, key: str) -> None:
        """Delete a value from the OS keyring."""
        try:
            await self._call(self._keyring.delete_password, key)
        except StorageError as exc:
            if isinstance(exc.__cause__, self._errors.PasswordDeleteError):
                logger.debug("No keyring entry to delete for %s", key)
                return
            raise


def create_secure_storage(backend: str = "keyring", **kwargs: Any) -> SecureStorage:
    """Factory function for secure storage backends.

    Parameters
    ----------
    backend : str
        Storage backend: "keyring" or "memory".
    **kwargs : Any
        Additional keyword arguments passed to the storage constructor.

    Returns
    -------
    SecureStorage
        A configured storage instance.
    """
    if backend == "memory":
        return MemorySecureStorage()
    if backend == "keyring":
        return KeyringSecureStorage(service_name=kwargs.get("service_name", "appauth"))
    msg = f"Unknown secure storage backend: {backend}"
    raise ValueError(msg)
