"""Typed notifications emitted by providers and the connection manager."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .models import QueueDepth

if TYPE_CHECKING:
    from .providers.types import ConnectionState

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueueUpdated:
    """A put, delete, or clear changed the contents of a queue."""

    profile_id: str | None
    queue_name: str


@dataclass(frozen=True, slots=True)
class DepthChanged:
    """A fresh depth reading is available for a queue."""

    profile_id: str | None
    queue_name: str
    depth: QueueDepth


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    """A provider moved to a new lifecycle state."""

    profile_id: str | None
    state: "ConnectionState"


Event = QueueUpdated | DepthChanged | ConnectionStateChanged
EventListener = Callable[[Event], None]


class EventBus:
    """Fire-and-forget fan-out of events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to events; returns an unsubscribe handle."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                LOG.exception("Event listener failed", extra={"event": type(event).__name__})

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


__all__ = [
    "ConnectionStateChanged",
    "DepthChanged",
    "Event",
    "EventBus",
    "EventListener",
    "QueueUpdated",
]
