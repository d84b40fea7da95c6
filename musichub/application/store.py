from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

from musichub.crosscutting.logging import log_error


logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[T], None]


class Observable(Generic[T]):
    """Minimal subscribe/notify store.

    Listeners receive immutable values; a failing listener is logged and skipped
    so one broken subscriber cannot stall the others.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                log_error(logger, "Store listener failed", e, store=type(self).__name__)
