from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("salesdesk.events")


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out for lead lifecycle events.

    Events are published after the owning transaction has committed, so a
    subscriber that raises is logged and skipped instead of failing the
    request that already changed state.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscribers(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self.subscribers(event_name):
            try:
                handler(event)
            except Exception as exc:
                logger.exception(
                    "event.handler_failed",
                    extra={"event_type": event_name, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            delivered += 1
        return delivered


event_bus = InProcessEventBus()
