from __future__ import annotations

from collections import deque
from typing import Any

from salesdesk.context import get_correlation_id
from salesdesk.core.config import get_settings
from salesdesk.core.events import event_bus

published_events: deque[dict[str, Any]] = deque(maxlen=get_settings().event_buffer_size)

_REQUIRED_KEYS = ("event_id", "event_type", "occurred_at", "version", "payload")


def publish(envelope: dict[str, Any]) -> None:
    """Record a lead lifecycle envelope and fan it out to in-process subscribers.

    Callers publish only after their transaction commits.
    """

    missing = [key for key in _REQUIRED_KEYS if key not in envelope]
    if missing:
        raise ValueError(f"event envelope missing keys: {', '.join(missing)}")
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_bus.publish(envelope["event_type"], envelope)
