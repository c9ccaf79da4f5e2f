"""Advisory change notifications for registration cases.

Delivery is best effort. Subscribers that miss an event resync by loading
the registration again; events are never replayed.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from app.core.models import utcnow

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


@dataclass(frozen=True)
class RegistrationEvent:
    type: str
    case_id: str
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "case_id": self.case_id,
            "payload": dict(self.payload),
            "occurred_at": self.occurred_at.isoformat(),
        }


Listener = Callable[[RegistrationEvent], None]


class Subscription:
    """Bounded buffer of events; the oldest are dropped when it is full."""

    def __init__(self, bus: EventBus, event_type: str, maxlen: int) -> None:
        self._bus = bus
        self.event_type = event_type
        self._events: deque[RegistrationEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, event: RegistrationEvent) -> None:
        with self._lock:
            self._events.append(event)

    def drain(self) -> list[RegistrationEvent]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def close(self) -> None:
        self._bus.remove_listener(self.event_type, self)


class EventBus:
    def __init__(self, subscription_size: int = 100) -> None:
        self.subscription_size = subscription_size
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def add_listener(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def subscribe(self, event_type: str = ALL_EVENTS) -> Subscription:
        subscription = Subscription(self, event_type, self.subscription_size)
        self.add_listener(event_type, subscription)
        return subscription

    def publish(self, event_type: str, case_id: str, payload: dict | None = None) -> RegistrationEvent:
        event = RegistrationEvent(type=event_type, case_id=case_id, payload=dict(payload or {}))
        self.publish_event(event)
        return event

    def publish_event(self, event: RegistrationEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event.type, ())) + list(self._listeners.get(ALL_EVENTS, ()))
        logger.debug("Event %s for registration %s: %s", event.type, event.case_id, event.payload)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s for registration %s", listener, event.type, event.case_id)
