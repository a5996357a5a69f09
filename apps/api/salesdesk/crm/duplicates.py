from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from salesdesk.crm.models import CRMActor, CRMLead, DuplicateStatus, utcnow
from salesdesk.metrics import observe_duplicate_lock
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.rls import build_scope_filter


logger = logging.getLogger("salesdesk.crm.intake")

_NON_DIGIT_RE = re.compile(r"\D+")
_NAME_PUNCT_RE = re.compile(r"[^a-z0-9 ]+")
_WHITESPACE_RE = re.compile(r"\s+")
# Older locks carry the contending rep only inside the reason sentence.
_LOCK_REASON_REP_RE = re.compile(r"new rep (\S+) attempted to claim")


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    return digits or None


def normalize_name(first_name: str | None, last_name: str | None) -> str:
    combined = f"{first_name or ''} {last_name or ''}".lower()
    combined = _NAME_PUNCT_RE.sub("", combined)
    return _WHITESPACE_RE.sub(" ", combined).strip()


def format_lock_reason(match_type: str, contender: CRMActor) -> str:
    token = contender.rep_code or contender.display_name
    return f"Duplicate {match_type} - new rep {token} attempted to claim"


def parse_contending_rep_code(lock_reason: str | None) -> str | None:
    if not lock_reason:
        return None
    match = _LOCK_REASON_REP_RE.search(lock_reason)
    if match is None:
        return None
    return match.group(1)


@dataclass(slots=True)
class Contention:
    original: CRMLead
    match_type: str


@dataclass(slots=True, frozen=True)
class LockRecord:
    lead_id: uuid.UUID
    canonical_lead_id: uuid.UUID
    match_type: str
    contender_id: uuid.UUID


@dataclass(slots=True)
class DuplicateGroup:
    match_type: str
    confidence: str
    key: str
    leads: list[CRMLead] = field(default_factory=list)


def report_lock(record: LockRecord) -> None:
    observe_duplicate_lock(record.match_type)
    logger.info(
        "lead.locked_for_review",
        extra={
            "lead_id": str(record.lead_id),
            "canonical_lead_id": str(record.canonical_lead_id),
            "match_type": record.match_type,
            "actor_id": str(record.contender_id),
        },
    )


class DuplicateDetector:
    """Finds leads that claim the same contact as another rep's lead and locks them."""

    def find_contention(
        self,
        session: Session,
        *,
        email: str | None,
        phone: str | None,
        target_actor_id: uuid.UUID | None,
        exclude_lead_id: uuid.UUID | None = None,
    ) -> Contention | None:
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if target_actor_id is None or (email is None and phone is None):
            return None

        identity_clauses = []
        if email is not None:
            identity_clauses.append(CRMLead.email == email)
        if phone is not None:
            identity_clauses.append(CRMLead.phone == phone)

        stmt = select(CRMLead).where(
            or_(*identity_clauses),
            CRMLead.assigned_to_id.is_not(None),
            CRMLead.assigned_to_id != target_actor_id,
            CRMLead.duplicate_status != DuplicateStatus.PENDING_REVIEW.value,
        )
        if exclude_lead_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_lead_id)

        original = session.scalar(stmt.order_by(CRMLead.created_at.asc(), CRMLead.id.asc()).limit(1))
        if original is None:
            return None
        match_type = "email" if email is not None and original.email == email else "phone"
        return Contention(original=original, match_type=match_type)

    def lock_for_review(
        self,
        session: Session,
        lead: CRMLead,
        contention: Contention,
        contender: CRMActor,
    ) -> LockRecord:
        """Lock ``lead`` against ``contention.original``.

        The original owner keeps the claim while the lock is open; the rep who
        tried to claim it is recorded in ``contending_actor_id``. The returned
        record is handed to :func:`report_lock` after the caller commits.
        """

        original = contention.original
        lead.assigned_to_id = original.assigned_to_id
        lead.assigned_to_name = original.assigned_to_name
        lead.rep_code = original.rep_code
        lead.manager_id = original.manager_id
        lead.manager_overridden = False
        lead.needs_triage = False
        lead.duplicate_status = DuplicateStatus.PENDING_REVIEW.value
        lead.locked_for_review = True
        lead.duplicate_of_id = original.id
        lead.contending_actor_id = contender.id
        lead.lock_reason = format_lock_reason(contention.match_type, contender)
        lead.locked_at = utcnow()
        lead.reviewed_by_id = None
        lead.review_decision = None
        lead.reviewed_at = None
        session.flush()
        return LockRecord(
            lead_id=lead.id,
            canonical_lead_id=original.id,
            match_type=contention.match_type,
            contender_id=contender.id,
        )

    def find_duplicate_groups(self, session: Session, ctx: PermissionContext) -> list[DuplicateGroup]:
        """Group visible leads by email, phone, then normalized name.

        A lead lands in at most one group, oldest leads first.
        """

        scope = build_scope_filter(ctx)
        leads = session.scalars(
            select(CRMLead)
            .where(scope.to_sql(CRMLead.assigned_to_id))
            .order_by(CRMLead.created_at.asc(), CRMLead.id.asc())
        ).all()

        grouped: set[uuid.UUID] = set()
        groups: list[DuplicateGroup] = []
        passes = (
            ("email", "high", lambda lead: normalize_email(lead.email)),
            ("phone", "high", lambda lead: normalize_phone(lead.phone)),
            ("name", "medium", lambda lead: normalize_name(lead.first_name, lead.last_name) or None),
        )
        for match_type, confidence, key_of in passes:
            buckets: dict[str, list[CRMLead]] = {}
            for lead in leads:
                if lead.id in grouped:
                    continue
                key = key_of(lead)
                if key is None:
                    continue
                buckets.setdefault(key, []).append(lead)
            for key, members in buckets.items():
                if len(members) < 2:
                    continue
                groups.append(DuplicateGroup(match_type=match_type, confidence=confidence, key=key, leads=members))
                grouped.update(member.id for member in members)
        return groups
