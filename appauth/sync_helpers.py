"""Helpers for scheduling coroutines onto an owning event loop.

Providers are bound to the loop they were first used on. Synchronous
code (property getters, timer callbacks, other threads) hands work to
that loop through ``spawn_background``.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging

from typing import TYPE_CHECKING, Any, TypeVar


if TYPE_CHECKING:
    from collections.abc import Coroutine


T = TypeVar("T")

logger = logging.getLogger("appauth")

# Strong references so fire-and-forget tasks are not garbage collected.
_background_tasks: set[asyncio.Task[Any]] = set()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


def spawn_background(
    coro: Coroutine[Any, Any, T],
    loop: asyncio.AbstractEventLoop | None = None,
    name: str | None = None,
) -> asyncio.Task[T] | concurrent.futures.Future[T]:
    """Run *coro* in the background on *loop*.

    On the loop's own thread this creates a task; from any other thread
    the coroutine is submitted thread-safely.

    Parameters
    ----------
    coro : Coroutine
        The coroutine to run.
    loop : asyncio.AbstractEventLoop, optional
        Target loop (default: the running loop).
    name : str, optional
        Task name used in log messages.

    Returns
    -------
    asyncio.Task or concurrent.futures.Future
        Handle of the scheduled work.

    Raises
    ------
    RuntimeError
        If no loop is given and none is running, or the loop is closed.
    """
    running = _running_loop()
    target = loop or running
    if target is None or target.is_closed():
        coro.close()
        msg = "No running event loop to schedule background work on"
        raise RuntimeError(msg)

    if target is running:
        task = target.create_task(coro, name=name)
        _background_tasks.add(task)
        task.add_done_callback(_log_task_failure)
        return task

    return asyncio.run_coroutine_threadsafe(coro, target)
