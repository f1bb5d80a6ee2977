"""In-process broadcast channel for browser redirect URLs.

The browser callback page relays the redirect URL it was loaded with
(see ``web_routes``); the channel fans it out to every waiting web
login flow. Publishing is thread-safe: subscribers are plain callables
and each flow hops back to its own event loop.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import threading

from collections.abc import Callable

from ..log import log_callback_error


logger = logging.getLogger("appauth.auth")

# Name of the BroadcastChannel the callback page posts to.
CHANNEL_NAME = "appauth"

# Prefix of window.opener messages when BroadcastChannel is unavailable.
MESSAGE_PREFIX = "appauth="

RedirectSubscriber = Callable[[str], None]


class RedirectChannel:
    """Publish/subscribe hub for redirect URLs."""

    def __init__(self) -> None:
        """Initialize the channel."""
        self._subscribers: list[RedirectSubscriber] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        """Number of active subscriptions."""
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: RedirectSubscriber) -> Callable[[], None]:
        """Register *callback* for published URLs.

        Returns
        -------
        Callable[[], None]
            Function removing the subscription; calling it twice is harmless.
        """
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, message: str) -> int:
        """Deliver a redirect URL to all subscribers.

        Messages in the window.opener form (``"appauth=<url>"``) are
        accepted as well.

        Returns
        -------
        int
            Number of subscribers the message was delivered to.
        """
        url = message[len(MESSAGE_PREFIX) :] if message.startswith(MESSAGE_PREFIX) else message
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(url)
            except Exception as exc:
                log_callback_error(getattr(callback, "__name__", repr(callback)), exc)
        logger.debug("Relayed redirect URL to %d subscriber(s)", len(subscribers))
        return len(subscribers)


_default_channel = RedirectChannel()


def get_redirect_channel() -> RedirectChannel:
    """Return the process-wide redirect channel."""
    return _default_channel
