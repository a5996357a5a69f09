from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesdesk import audit
from salesdesk.core.database import Base
from salesdesk.crm.errors import ConflictError, UnresolvableError
from salesdesk.crm.identity import build_permission_context
from salesdesk.crm.models import CRMActivity, CRMActor, CRMLead
from salesdesk.crm.repositories import LeadRepository, lead_snapshot
from salesdesk.crm.review import ReviewService
from salesdesk.crm.schemas import LeadCreate
from salesdesk.crm.service import LeadService
from salesdesk.platform.security.errors import PermissionDeniedError


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def org(db_session: Session) -> dict[str, CRMActor]:
    owner = CRMActor(email="owner@example.com", first_name="Olive", last_name="Owner", role="owner")
    director = CRMActor(email="dir@example.com", first_name="Dana", last_name="Director", role="director")
    manager_one = CRMActor(email="m1@example.com", first_name="Mia", last_name="One", role="manager")
    manager_two = CRMActor(email="m2@example.com", first_name="Max", last_name="Two", role="manager")
    manager_three = CRMActor(email="m3@example.com", first_name="Mo", last_name="Three", role="manager")
    db_session.add_all([owner, director, manager_one, manager_two, manager_three])
    db_session.flush()
    rep_one = CRMActor(
        email="rep1@example.com",
        first_name="Rae",
        last_name="First",
        role="salesperson",
        rep_code="REP001",
        manager_id=manager_one.id,
    )
    rep_two = CRMActor(
        email="rep2@example.com",
        first_name="Rob",
        last_name="Second",
        role="salesperson",
        rep_code="REP002",
        manager_id=manager_two.id,
    )
    db_session.add_all([rep_one, rep_two])
    db_session.commit()
    return {
        "owner": owner,
        "director": director,
        "m1": manager_one,
        "m2": manager_two,
        "m3": manager_three,
        "rep1": rep_one,
        "rep2": rep_two,
    }


@pytest.fixture()
def contention(db_session: Session, org: dict[str, CRMActor]) -> tuple[CRMLead, CRMLead]:
    ctx = build_permission_context(db_session, org["owner"].id)
    service = LeadService()
    original = service.intake(
        db_session,
        ctx,
        LeadCreate(first_name="Xavier", last_name="Young", email="x@y.com", rep_code="REP001", lead_score=40),
    )
    incoming = service.intake(
        db_session,
        ctx,
        LeadCreate(first_name="Xavier", last_name="Young", email="x@y.com", rep_code="REP002", lead_score=75),
    )
    lead_a = db_session.get(CRMLead, original.id)
    lead_b = db_session.get(CRMLead, incoming.id)
    assert lead_a is not None and lead_b is not None
    assert lead_b.locked_for_review is True
    return lead_a, lead_b


def _activity_count(session: Session, lead_id: object) -> int:
    return int(session.scalar(select(func.count(CRMActivity.id)).where(CRMActivity.customer_id == lead_id)) or 0)


def _state(session: Session, *lead_ids: object) -> list[tuple[dict | None, int]]:
    session.expire_all()
    state = []
    for lead_id in lead_ids:
        lead = session.get(CRMLead, lead_id)
        state.append((lead_snapshot(lead) if lead is not None else None, _activity_count(session, lead_id)))
    return state


def test_contending_reps_manager_reassigns_to_new_rep(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    lead_a, lead_b = contention
    ctx = build_permission_context(db_session, org["m2"].id)

    result = ReviewService().resolve(db_session, ctx, lead_b.id, "reassign_to_new", notes="REP002 met them first")

    db_session.refresh(lead_b)
    db_session.refresh(lead_a)
    assert lead_b.assigned_to_id == org["rep2"].id
    assert lead_b.assigned_to_name == "Rob Second"
    assert lead_b.rep_code == "REP002"
    assert lead_b.manager_id == org["m2"].id
    assert lead_b.locked_for_review is False
    assert lead_b.duplicate_status == "resolved"
    assert lead_b.lock_reason is None
    assert lead_b.reviewed_by_id == org["m2"].id
    assert lead_b.review_decision == "reassign_to_new"
    assert lead_b.reviewed_at is not None
    assert lead_a.assigned_to_id == org["rep1"].id
    assert result.lead is not None and result.lead.assigned_to_id == org["rep2"].id

    subjects = db_session.scalars(select(CRMActivity.subject).where(CRMActivity.customer_id == lead_b.id)).all()
    assert subjects == ["Duplicate Review - Reassigned to New Rep"]


def test_original_owners_manager_keeps_original(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    _, lead_b = contention
    ctx = build_permission_context(db_session, org["m1"].id)
    audit.audit_entries.clear()

    ReviewService().resolve(db_session, ctx, lead_b.id, "keep_original")

    db_session.refresh(lead_b)
    assert lead_b.assigned_to_id == org["rep1"].id
    assert lead_b.duplicate_status == "resolved"
    assert lead_b.locked_for_review is False
    assert lead_b.review_decision == "keep_original"
    assert [entry["action"] for entry in audit.entries_for(str(lead_b.id))] == ["review.keep_original"]
    assert audit.audit_entries[0]["before"]["locked_for_review"] is True


@pytest.mark.parametrize(
    ("first", "second"),
    [
        ("keep_original", "keep_original"),
        ("keep_original", "merge"),
        ("reassign_to_new", "keep_original"),
        ("reassign_to_new", "reassign_to_new"),
        ("merge", "keep_original"),
        ("merge", "reassign_to_new"),
        ("merge", "merge"),
    ],
)
def test_second_resolution_conflicts_without_mutation(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
    first: str,
    second: str,
) -> None:
    lead_a, lead_b = contention
    lead_ids = (lead_a.id, lead_b.id)
    ctx = build_permission_context(db_session, org["director"].id)
    service = ReviewService()
    service.resolve(db_session, ctx, lead_b.id, first)
    state = _state(db_session, *lead_ids)

    with pytest.raises(ConflictError):
        service.resolve(db_session, ctx, lead_ids[1], second)

    assert _state(db_session, *lead_ids) == state


def test_concurrent_reviewer_with_stale_read_gets_conflict(
    session_factory: sessionmaker[Session],
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    _, lead_b = contention
    lead_id = lead_b.id
    slow = session_factory()
    fast = session_factory()
    try:
        stale = slow.get(CRMLead, lead_id)
        assert stale is not None and stale.duplicate_status == "pending_review"

        ReviewService().resolve(fast, build_permission_context(fast, org["m1"].id), lead_id, "keep_original")

        with pytest.raises(ConflictError):
            ReviewService().resolve(slow, build_permission_context(slow, org["m2"].id), lead_id, "reassign_to_new")
    finally:
        slow.close()
        fast.close()

    db_session.expire_all()
    resolved = db_session.get(CRMLead, lead_id)
    assert resolved is not None
    assert resolved.review_decision == "keep_original"
    assert resolved.assigned_to_id == org["rep1"].id


@pytest.mark.parametrize("actor_key", ["rep1", "rep2", "m3"])
def test_unauthorized_reviewers_are_denied(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
    actor_key: str,
) -> None:
    _, lead_b = contention
    ctx = build_permission_context(db_session, org[actor_key].id)

    with pytest.raises(PermissionDeniedError):
        ReviewService().resolve(db_session, ctx, lead_b.id, "keep_original")

    db_session.refresh(lead_b)
    assert lead_b.locked_for_review is True


def test_reassign_to_missing_rep_is_unresolvable(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    _, lead_b = contention
    org["rep2"].is_active = False
    db_session.commit()
    ctx = build_permission_context(db_session, org["owner"].id)

    with pytest.raises(UnresolvableError):
        ReviewService().resolve(db_session, ctx, lead_b.id, "reassign_to_new")

    db_session.refresh(lead_b)
    assert lead_b.locked_for_review is True
    assert lead_b.duplicate_status == "pending_review"
    assert lead_b.assigned_to_id == org["rep1"].id
    assert _activity_count(db_session, lead_b.id) == 0


def test_legacy_lock_reason_is_still_resolvable(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    _, lead_b = contention
    lead_b.contending_actor_id = None
    lead_b.lock_reason = "Duplicate email - new rep REP002 attempted to claim"
    db_session.commit()
    ctx = build_permission_context(db_session, org["owner"].id)

    ReviewService().resolve(db_session, ctx, lead_b.id, "reassign_to_new")

    db_session.refresh(lead_b)
    assert lead_b.assigned_to_id == org["rep2"].id


@pytest.mark.parametrize("decision", ["keep_original", "reassign_to_new", "merge"])
def test_deleted_canonical_requires_manual_intervention(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
    decision: str,
) -> None:
    lead_a, lead_b = contention
    owner_ctx = build_permission_context(db_session, org["owner"].id)
    LeadService().delete_lead(db_session, owner_ctx, lead_a.id)

    with pytest.raises(ConflictError):
        ReviewService().resolve(db_session, owner_ctx, lead_b.id, decision)

    db_session.refresh(lead_b)
    assert lead_b.duplicate_status == "pending_review"
    assert lead_b.locked_for_review is True
    assert lead_b.assigned_to_id == org["rep1"].id
    assert _activity_count(db_session, lead_b.id) == 0


def test_merge_decision_folds_duplicate_into_canonical(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    lead_a, lead_b = contention
    db_session.add_all(
        [
            CRMActivity(customer_id=lead_b.id, activity_type="call", subject="Intro call"),
            CRMActivity(customer_id=lead_b.id, activity_type="email", subject="Follow up"),
            CRMActivity(customer_id=lead_a.id, activity_type="note", subject="Existing"),
        ]
    )
    db_session.commit()
    lead_a_id, lead_b_id = lead_a.id, lead_b.id
    ctx = build_permission_context(db_session, org["director"].id)

    result = ReviewService().resolve(db_session, ctx, lead_b_id, "merge")

    assert db_session.get(CRMLead, lead_b_id) is None
    assert result.reparented_activities == 2
    assert result.canonical is not None and result.canonical.lead_score == 75
    assert _activity_count(db_session, lead_a_id) == 1 + 2 + 1
    merge_log = LeadRepository.find_merge(db_session, lead_b_id)
    assert merge_log is not None
    assert merge_log.canonical_lead_id == lead_a_id
    assert merge_log.merged_by_id == org["director"].id


def test_contenders_manager_cannot_merge_into_foreign_canonical(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    lead_a, lead_b = contention
    audit.audit_entries.clear()
    state = _state(db_session, lead_a.id, lead_b.id)
    ctx = build_permission_context(db_session, org["m2"].id)

    with pytest.raises(PermissionDeniedError):
        ReviewService().resolve(db_session, ctx, lead_b.id, "merge")

    assert _state(db_session, lead_a.id, lead_b.id) == state
    assert LeadRepository.find_merge(db_session, lead_b.id) is None
    assert [entry["action"] for entry in audit.audit_entries] == ["permission.denied"]


def test_manager_over_both_leads_can_merge(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    lead_a, lead_b = contention
    lead_a_id, lead_b_id = lead_a.id, lead_b.id
    ctx = build_permission_context(db_session, org["m1"].id)

    result = ReviewService().resolve(db_session, ctx, lead_b_id, "merge")

    assert result.canonical is not None and result.canonical.id == lead_a_id
    assert db_session.get(CRMLead, lead_b_id) is None


def test_pending_queue_and_stats_follow_reviewer_scope(
    db_session: Session,
    org: dict[str, CRMActor],
    contention: tuple[CRMLead, CRMLead],
) -> None:
    lead_a, lead_b = contention
    service = ReviewService()

    m2_queue = service.list_pending(db_session, build_permission_context(db_session, org["m2"].id))
    m3_queue = service.list_pending(db_session, build_permission_context(db_session, org["m3"].id))
    owner_stats = service.stats(db_session, build_permission_context(db_session, org["owner"].id))

    assert [item.lead.id for item in m2_queue] == [lead_b.id]
    assert m2_queue[0].canonical is not None and m2_queue[0].canonical.id == lead_a.id
    assert m2_queue[0].contending_actor is not None and m2_queue[0].contending_actor.rep_code == "REP002"
    assert m3_queue == []
    assert (owner_stats.pending_review, owner_stats.locked, owner_stats.resolved) == (1, 1, 0)

    with pytest.raises(PermissionDeniedError):
        service.list_pending(db_session, build_permission_context(db_session, org["rep1"].id))
