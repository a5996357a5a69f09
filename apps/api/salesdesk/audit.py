from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from salesdesk.context import get_correlation_id
from salesdesk.core.config import get_settings

# In-process trail of lead mutations and permission denials, newest last.
audit_entries: deque[dict[str, Any]] = deque(maxlen=get_settings().audit_buffer_size)


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_id: str, *, action: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_id"] == entity_id and (action is None or entry["action"] == action)
    ]
