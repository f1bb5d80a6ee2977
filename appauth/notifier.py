"""Change notification fan-out for UI observers."""

from __future__ import annotations

from collections.abc import Callable

from .log import log_callback_error


Listener = Callable[[], None]


class ChangeNotifier:
    """Keeps a set of listener callbacks and invokes them on change.

    Listeners are called in registration order; a failing listener is
    logged and does not stop the others.
    """

    def __init__(self) -> None:
        """Initialize with no listeners."""
        self._listeners: list[Listener] = []

    @property
    def has_listeners(self) -> bool:
        """Whether any listener is registered."""
        return bool(self._listeners)

    def add_listener(self, listener: Listener) -> None:
        """Register *listener*; registering it twice is a no-op."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        """Unregister *listener* if registered."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_listeners(self) -> None:
        """Call every registered listener."""
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:
                log_callback_error(getattr(listener, "__name__", repr(listener)), exc)
