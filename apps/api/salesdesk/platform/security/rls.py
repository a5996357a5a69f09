from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy import ColumnElement, false, true
from sqlalchemy.sql import Select

from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.policies import Role, parse_role


class ScopeKind(StrEnum):
    ALL = "all"
    TEAM = "team"
    SELF = "self"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    """Row-visibility predicate for lead queries.

    The filter is a plain value so it can be asserted on directly and also
    rendered into a SQL clause against any owner column.
    """

    kind: ScopeKind
    owner_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)

    def matches(self, owner_id: uuid.UUID | None) -> bool:
        if self.kind is ScopeKind.ALL:
            return True
        if self.kind is ScopeKind.NONE or owner_id is None:
            return False
        return owner_id in self.owner_ids

    def to_sql(self, owner_column: Any) -> ColumnElement[bool]:
        if self.kind is ScopeKind.ALL:
            return true()
        if self.kind is ScopeKind.NONE or not self.owner_ids:
            return false()
        if len(self.owner_ids) == 1:
            (only,) = self.owner_ids
            return owner_column == only
        return owner_column.in_(sorted(self.owner_ids, key=str))


MATCH_NOTHING = ScopeFilter(kind=ScopeKind.NONE)
MATCH_ALL = ScopeFilter(kind=ScopeKind.ALL)


def build_scope_filter(ctx: PermissionContext) -> ScopeFilter:
    """Project the permission rules onto "which leads may this caller see".

    Any role that is not recognized yields ``MATCH_NOTHING``.
    """

    role = parse_role(ctx.role)
    if role is None:
        return MATCH_NOTHING
    if role in {Role.OWNER, Role.DIRECTOR} or ctx.elevated_admin:
        return MATCH_ALL
    if role is Role.MANAGER:
        return ScopeFilter(kind=ScopeKind.TEAM, owner_ids=frozenset(ctx.team_member_ids))
    if role is Role.SALESPERSON:
        return ScopeFilter(kind=ScopeKind.SELF, owner_ids=frozenset({ctx.actor_id}))
    return MATCH_NOTHING


def apply_scope_filter(query: Select[Any], ctx: PermissionContext, owner_column: Any) -> Select[Any]:
    return query.where(build_scope_filter(ctx).to_sql(owner_column))
