from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class PermissionContext:
    """Immutable identity snapshot consulted by permission and scope checks.

    ``role`` is kept as the raw stored string so an unrecognized value can be
    represented and denied instead of being coerced into a valid role.
    ``team_member_ids`` is only populated for managers and is rebuilt from the
    live reporting lines every time a context is built.
    """

    actor_id: uuid.UUID
    role: str
    elevated_admin: bool = False
    manager_id: uuid.UUID | None = None
    team_member_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)
    correlation_id: str | None = None
