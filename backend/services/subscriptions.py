"""Change-notification helper shared by the stateful services."""

from __future__ import annotations

from typing import Callable

from utils.logger import get_logger

logger = get_logger("subscriptions")

UpdateCallback = Callable[[], None]


class Subscribable:
    """Holds zero-argument callbacks invoked after every successful mutation."""

    def __init__(self):
        self._subscribers: list[UpdateCallback] = []

    def subscribe(self, callback: UpdateCallback) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: UpdateCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as exc:
                logger.error(
                    "Subscriber callback failed",
                    service=type(self).__name__,
                    error=str(exc),
                    exc_info=True,
                )
