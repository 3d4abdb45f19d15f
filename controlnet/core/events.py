"""In-process publish/subscribe bus shared by the control network components."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from controlnet.models.enums import EventName

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True, frozen=True)
class Event:
    """A published domain event."""

    name: EventName
    payload: Mapping[str, Any]
    source: str
    timestamp: float
    sequence: int


EventHandler = Callable[[Event], None]


@dataclass(slots=True)
class _Subscription:
    handler: EventHandler
    active: bool = True
    calls: int = field(default=0)


class EventBus:
    """Synchronous, ordered event delivery.

    Handlers run on the publisher's call stack in subscription order. A
    failing handler is logged and counted; later handlers still receive the
    event and the publisher never sees the exception.
    """

    def __init__(self, *, clock: Clock | None = None, history_limit: int = 200) -> None:
        self._clock = clock or time.monotonic
        self._subscriptions: dict[EventName, list[_Subscription]] = {}
        self._history: deque[Event] = deque(maxlen=history_limit or None)
        self._keep_history = history_limit > 0
        self._sequence = 0
        self.published = 0
        self.handler_errors = 0

    def subscribe(self, name: EventName, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``name`` and return an unsubscribe callable."""

        subscription = _Subscription(handler=handler)
        self._subscriptions.setdefault(name, []).append(subscription)

        def _unsubscribe() -> None:
            subscription.active = False
            subs = self._subscriptions.get(name)
            if subs and subscription in subs:
                subs.remove(subscription)

        return _unsubscribe

    def unsubscribe(self, name: EventName, handler: EventHandler) -> bool:
        subs = self._subscriptions.get(name, [])
        for subscription in subs:
            if subscription.handler == handler:
                subscription.active = False
                subs.remove(subscription)
                return True
        return False

    def publish(
        self,
        name: EventName,
        payload: Mapping[str, Any] | None = None,
        *,
        source: str,
    ) -> Event:
        self._sequence += 1
        event = Event(
            name=name,
            payload=dict(payload or {}),
            source=source,
            timestamp=self._clock(),
            sequence=self._sequence,
        )
        self.published += 1
        if self._keep_history:
            self._history.append(event)

        # Snapshot so handlers may (un)subscribe while we deliver.
        for subscription in list(self._subscriptions.get(name, ())):
            if not subscription.active:
                continue
            subscription.calls += 1
            try:
                subscription.handler(event)
            except Exception:
                self.handler_errors += 1
                logger.exception(
                    "Event handler failed",
                    extra={"event": str(name), "source": source},
                )
        return event

    def subscriber_count(self, name: EventName) -> int:
        return len(self._subscriptions.get(name, ()))

    def recent(self, limit: int | None = None, *, name: EventName | None = None) -> list[Event]:
        events = [e for e in self._history if name is None or e.name == name]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for subscription in subs:
                subscription.active = False
        self._subscriptions.clear()
        self._history.clear()


__all__ = ["Clock", "Event", "EventBus", "EventHandler"]
