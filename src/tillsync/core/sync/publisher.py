"""
Status publisher.

In-process observer registry for the process-wide ``ServiceStatus``. UI
layers, the CLI and the local API subscribe to be told about connectivity
and syncing transitions without polling.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from tillsync.core.sync.models import ServiceStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[ServiceStatus], None]


class StatusPublisher:
    """
    Holds the current status and notifies subscribers on every change.

    Notification is synchronous and runs over a snapshot of the listener
    list, so a listener may subscribe or unsubscribe while being notified;
    the change applies from the next notification on. A listener that raises
    is logged and skipped.

    Example:
        >>> publisher = StatusPublisher()
        >>> unsubscribe = publisher.subscribe(lambda s: print(s.is_syncing))
        >>> publisher.update(is_syncing=True)
        True
        >>> unsubscribe()
    """

    def __init__(self, initial: ServiceStatus | None = None) -> None:
        self._current = initial or ServiceStatus()
        self._listeners: list[StatusListener] = []

    @property
    def current(self) -> ServiceStatus:
        """The most recently published status."""
        return self._current

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener; calling it twice is harmless
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, status: ServiceStatus) -> None:
        """Replace the current status and notify every listener."""
        self._current = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener %r raised", listener)

    def update(self, **changes: Any) -> ServiceStatus:
        """
        Publish a copy of the current status with ``changes`` applied.

        Nothing is published when the values are unchanged.
        """
        status = self._current.model_copy(update=changes)
        if status != self._current:
            self.publish(status)
        return self._current
