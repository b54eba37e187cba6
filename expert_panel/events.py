"""In-process lifecycle event bus."""

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from expert_panel.models import LifecycleEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[LifecycleEvent], None]


class EventBus:
    """Synchronous fan-out of lifecycle events to subscribers.

    A failing subscriber is logged and skipped; it never affects the request
    or the other subscribers. The most recent events are kept for inspection.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[LifecycleEvent] = deque(maxlen=history_size)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, kind: str, request_id: str, mode: str | None = None, **detail: Any) -> LifecycleEvent:
        event = LifecycleEvent(
            kind=kind,
            request_id=request_id,
            mode=mode,
            at=datetime.now(timezone.utc),
            detail=detail,
        )
        self._history.append(event)
        logger.debug("Event %s for %s", kind, request_id)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logger.error("Event subscriber failed on %s: %s", kind, exc)
        return event

    @property
    def history(self) -> list[LifecycleEvent]:
        return list(self._history)
