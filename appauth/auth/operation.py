"""Cancellable wrapper for one in-flight authorization attempt."""

from __future__ import annotations

import asyncio

from collections.abc import Coroutine
from typing import Any, Generic, TypeVar


T = TypeVar("T")


class LoginOperation(Generic[T]):
    """A cancellable async computation resolving to a value or ``None``.

    Cancellation is a normal outcome: ``value_or_cancellation()`` returns
    None for a cancelled operation instead of raising.

    Parameters
    ----------
    future : asyncio.Future
        The task or future backing the operation.
    """

    def __init__(self, future: asyncio.Future[T | None]) -> None:
        """Initialize the operation."""
        self._future = future
        self._cancel_requested = False

    @classmethod
    def start(cls, coro: Coroutine[Any, Any, T | None], name: str | None = None) -> LoginOperation[T]:
        """Run *coro* as a task on the running loop."""
        return cls(asyncio.get_running_loop().create_task(coro, name=name))

    @classmethod
    def from_value(cls, value: T | None) -> LoginOperation[T]:
        """Create an already completed operation."""
        future: asyncio.Future[T | None] = asyncio.get_running_loop().create_future()
        future.set_result(value)
        return cls(future)

    @property
    def is_cancelled(self) -> bool:
        """Whether the operation was cancelled before it finished."""
        return self._cancel_requested or self._future.cancelled()

    @property
    def done(self) -> bool:
        """Whether the operation has finished."""
        return self._future.done()

    async def value_or_cancellation(self) -> T | None:
        """Wait for the result; None if the operation was cancelled.

        Raises
        ------
        Exception
            Whatever the underlying work raised.
        """
        await asyncio.wait({self._future})
        if self._future.cancelled():
            return None
        return self._future.result()

    async def cancel(self) -> None:
        """Cancel the operation and wait until it has unwound."""
        if self._future.done():
            return
        self._cancel_requested = True
        self._future.cancel()
        await asyncio.wait({self._future})
