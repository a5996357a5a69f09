from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesdesk import audit, events
from salesdesk.core.auth import AuthUser, get_current_user as auth_get_current_user
from salesdesk.core.database import Base, get_db
from salesdesk.crm.models import CRMActor, CRMLead
from salesdesk.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def org(db_session: Session) -> dict[str, CRMActor]:
    owner = CRMActor(email="owner@example.com", first_name="Olive", last_name="Owner", role="owner")
    manager_one = CRMActor(email="m1@example.com", first_name="Mia", last_name="One", role="manager")
    manager_two = CRMActor(email="m2@example.com", first_name="Max", last_name="Two", role="manager")
    db_session.add_all([owner, manager_one, manager_two])
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
    return {"owner": owner, "m1": manager_one, "m2": manager_two, "rep1": rep_one, "rep2": rep_two}


class ActingUser:
    def __init__(self) -> None:
        self.sub = "anonymous"

    def use(self, actor: CRMActor | str) -> None:
        self.sub = actor if isinstance(actor, str) else str(actor.id)


@pytest.fixture()
def acting() -> ActingUser:
    return ActingUser()


@pytest.fixture()
def client(db_session: Session, acting: ActingUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub=acting.sub)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, **fields: object) -> dict:
    payload = {"first_name": "Xavier", "last_name": "Young", "email": "x@y.com"}
    payload.update(fields)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_unauthenticated_requests_are_rejected(client: TestClient) -> None:
    response = client.get("/api/crm/leads")
    assert response.status_code == 401


def test_unknown_subject_is_forbidden(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(str(uuid.uuid4()))
    response = client.get("/api/crm/leads")
    assert response.status_code == 403
    assert response.json()["detail"] == "Unknown or inactive user"


def test_contention_locks_lead_and_manager_resolves(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["owner"])
    original = _create_lead(client, rep_code="REP001")
    incoming = _create_lead(client, email="X@Y.com", rep_code="rep002")

    assert original["assigned_to_id"] == str(org["rep1"].id)
    assert original["locked_for_review"] is False
    assert incoming["locked_for_review"] is True
    assert incoming["duplicate_status"] == "pending_review"
    assert incoming["duplicate_of_id"] == original["id"]
    assert incoming["assigned_to_id"] == str(org["rep1"].id)
    assert incoming["contending_actor_id"] == str(org["rep2"].id)
    assert incoming["lock_reason"] == "Duplicate email - new rep REP002 attempted to claim"

    acting.use(org["m2"])
    pending = client.get("/api/crm/duplicates/pending")
    assert pending.status_code == 200
    assert [item["lead"]["id"] for item in pending.json()] == [incoming["id"]]

    resolved = client.post(
        f"/api/crm/duplicates/{incoming['id']}/resolve",
        json={"decision": "reassign_to_new", "notes": "Rob booked the appointment"},
    )
    assert resolved.status_code == 200, resolved.text
    body = resolved.json()
    assert body["decision"] == "reassign_to_new"
    assert body["lead"]["assigned_to_id"] == str(org["rep2"].id)
    assert body["lead"]["locked_for_review"] is False
    assert body["canonical_lead_id"] == original["id"]

    again = client.post(f"/api/crm/duplicates/{incoming['id']}/resolve", json={"decision": "keep_original"})
    assert again.status_code == 409
    assert again.json()["code"] == "crm_duplicate_resolve_failed"
    assert again.json()["details"]["error"] == "crm_conflict"

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types.count("crm.lead.created") == 2
    assert "crm.lead.locked" in event_types
    assert event_types[-1] == "crm.lead.review_resolved"


def test_denials_carry_evaluator_reason(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["owner"])
    lead = _create_lead(client, rep_code="REP001")

    acting.use(org["rep2"])
    viewed = client.get(f"/api/crm/leads/{lead['id']}")
    assert viewed.status_code == 403
    payload = viewed.json()
    assert payload["code"] == "crm_lead_get_failed"
    assert payload["message"] == "You can only view your own leads"
    assert payload["details"] == {"error": "permission_denied", "action": "view"}
    assert payload["correlation_id"] == viewed.headers.get("x-correlation-id")

    deleted = client.delete(f"/api/crm/leads/{lead['id']}")
    assert deleted.status_code == 403
    assert deleted.json()["message"] == "Salespeople cannot delete leads"

    acting.use(org["m2"])
    reassigned = client.post(
        f"/api/crm/leads/{lead['id']}/reassign",
        json={"assigned_to_id": str(org["rep2"].id)},
    )
    assert reassigned.status_code == 403
    assert reassigned.json()["message"] == "Can only reassign leads within your team"


def test_locked_lead_rejects_edits(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(org["owner"])
    _create_lead(client, rep_code="REP001")
    incoming = _create_lead(client, rep_code="REP002")

    response = client.patch(
        f"/api/crm/leads/{incoming['id']}",
        json={"row_version": incoming["row_version"], "notes": "trying anyway"},
    )
    assert response.status_code == 409
    assert response.json()["message"] == "Lead is locked for duplicate review"


def test_update_with_stale_row_version_conflicts(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["rep1"])
    lead = _create_lead(client)

    first = client.patch(f"/api/crm/leads/{lead['id']}", json={"row_version": lead["row_version"], "status": "contacted"})
    assert first.status_code == 200
    assert first.json()["row_version"] == lead["row_version"] + 1

    stale = client.patch(f"/api/crm/leads/{lead['id']}", json={"row_version": lead["row_version"], "status": "lost"})
    assert stale.status_code == 409


def test_lead_list_is_scoped_per_role(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(org["owner"])
    mine = _create_lead(client, email="a@y.com", rep_code="REP001")
    theirs = _create_lead(client, email="b@y.com", rep_code="REP002")
    orphan = _create_lead(client, email="c@y.com")

    acting.use(org["rep1"])
    rep_view = {item["id"] for item in client.get("/api/crm/leads").json()}
    acting.use(org["m2"])
    manager_view = {item["id"] for item in client.get("/api/crm/leads").json()}
    acting.use(org["owner"])
    owner_view = {item["id"] for item in client.get("/api/crm/leads").json()}
    triage = client.get("/api/crm/leads", params={"needs_triage": "true"}).json()

    assert rep_view == {mine["id"]}
    assert manager_view == {theirs["id"]}
    assert owner_view == {mine["id"], theirs["id"], orphan["id"]}
    assert [item["id"] for item in triage] == [orphan["id"]]


def test_export_csv_respects_scope_and_permission(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["owner"])
    _create_lead(client, email="a@y.com", rep_code="REP001")
    _create_lead(client, email="b@y.com", rep_code="REP002")

    acting.use(org["m1"])
    response = client.get("/api/crm/leads/export")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert [row["email"] for row in rows] == ["a@y.com"]

    acting.use(org["rep1"])
    denied = client.get("/api/crm/leads/export")
    assert denied.status_code == 403
    assert denied.json()["message"] == "Salespeople cannot export data"


def test_activities_round_trip_and_touch_lead(
    client: TestClient,
    acting: ActingUser,
    db_session: Session,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["rep1"])
    lead = _create_lead(client)

    created = client.post(
        f"/api/crm/leads/{lead['id']}/activities",
        json={"activity_type": "call", "subject": "Discovery call", "description": "Wants a 30 year fixed"},
    )
    assert created.status_code == 201
    assert created.json()["actor_id"] == str(org["rep1"].id)

    listed = client.get(f"/api/crm/leads/{lead['id']}/activities")
    assert listed.status_code == 200
    assert [item["subject"] for item in listed.json()] == ["Discovery call"]

    stored = db_session.get(CRMLead, uuid.UUID(lead["id"]))
    assert stored is not None and stored.last_activity_at is not None


def test_bulk_reassign_within_team(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(org["owner"])
    first = _create_lead(client, email="a@y.com", rep_code="REP001")
    second = _create_lead(client, email="b@y.com", rep_code="REP001")

    acting.use(org["m1"])
    outside = client.post(
        "/api/crm/leads/bulk-reassign",
        json={"lead_ids": [first["id"], second["id"]], "assigned_to_id": str(org["rep2"].id)},
    )
    assert outside.status_code == 403
    assert outside.json()["message"] == "You can only reassign leads to members of your team"

    acting.use(org["owner"])
    moved = client.post(
        "/api/crm/leads/bulk-reassign",
        json={"lead_ids": [first["id"], second["id"]], "assigned_to_id": str(org["rep2"].id)},
    )
    assert moved.status_code == 200
    assert {item["assigned_to_id"] for item in moved.json()} == {str(org["rep2"].id)}
    assert {item["manager_id"] for item in moved.json()} == {str(org["m2"].id)}


def test_missing_lead_returns_not_found_envelope(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["owner"])
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "lead-404"})
    assert response.status_code == 404
    assert response.json()["details"]["error"] == "crm_not_found"
    assert response.json()["correlation_id"] == "lead-404"


def test_permission_check_and_context(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(org["owner"])
    lead = _create_lead(client, rep_code="REP001")

    acting.use(org["m1"])
    allowed = client.get("/api/crm/permissions/check", params={"action": "reassign", "lead_id": lead["id"]})
    assert allowed.json() == {"action": "reassign", "allowed": True, "reason": None}

    acting.use(org["m2"])
    denied = client.get("/api/crm/permissions/check", params={"action": "edit", "lead_id": lead["id"]})
    assert denied.json() == {
        "action": "edit",
        "allowed": False,
        "reason": "Can only edit leads assigned to your team",
    }
    unknown = client.get("/api/crm/permissions/check", params={"action": "teleport"})
    assert unknown.json()["allowed"] is False
    assert unknown.json()["reason"] == "Unknown action"

    context = client.get("/api/crm/permissions/context")
    assert context.status_code == 200
    body = context.json()
    assert body["role"] == "manager"
    assert set(body["team_member_ids"]) == {str(org["m2"].id), str(org["rep2"].id)}
    assert body["full_crm_visibility"] is False


def test_duplicate_scan_is_for_reviewers_only(client: TestClient, acting: ActingUser, org: dict[str, CRMActor]) -> None:
    acting.use(org["owner"])
    first = _create_lead(client, email="twin@example.com", rep_code="REP001")
    second = _create_lead(client, email="twin@example.com", rep_code="REP001")

    acting.use(org["m1"])
    scan = client.get("/api/crm/duplicates/scan")
    assert scan.status_code == 200
    assert [(group["match_type"], [lead["id"] for lead in group["leads"]]) for group in scan.json()] == [
        ("email", [first["id"], second["id"]])
    ]

    acting.use(org["m2"])
    assert client.get("/api/crm/duplicates/scan").json() == []

    acting.use(org["rep1"])
    denied = client.get("/api/crm/duplicates/scan")
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_duplicate_scan_failed"
    assert denied.json()["details"]["error"] == "permission_denied"


def test_resolving_a_merged_lead_again_conflicts(
    client: TestClient,
    acting: ActingUser,
    org: dict[str, CRMActor],
) -> None:
    acting.use(org["owner"])
    _create_lead(client, rep_code="REP001")
    incoming = _create_lead(client, rep_code="REP002")

    merged = client.post(f"/api/crm/duplicates/{incoming['id']}/resolve", json={"decision": "merge"})
    assert merged.status_code == 200, merged.text

    again = client.post(f"/api/crm/duplicates/{incoming['id']}/resolve", json={"decision": "keep_original"})
    assert again.status_code == 409
    assert again.json()["details"]["error"] == "crm_conflict"
    assert "already have been resolved" in again.json()["message"]

    missing = client.post(f"/api/crm/duplicates/{uuid.uuid4()}/resolve", json={"decision": "keep_original"})
    assert missing.status_code == 404
