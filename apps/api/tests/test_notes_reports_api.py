from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.bookops.api import get_current_user
from app.bookops.models import Account, Build, ManagerNote, ManagerReassignment, Opportunity, SalesRep
from app.bookops.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.rbac import Role
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def reset_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def build_id(db_session: Session) -> uuid.UUID:
    build = Build(name="FY27 Book", status="IN_REVIEW")
    db_session.add(build)
    db_session.flush()
    db_session.add_all(
        [
            SalesRep(build_id=build.id, rep_id="r1", name="Rita", region="North East", flm="Fiona", slm="Sam"),
            SalesRep(build_id=build.id, rep_id="r3", name="Rosa", region="West", flm="Felix", slm="Sara"),
            Account(
                build_id=build.id,
                sfdc_account_id="acc-1",
                account_name="Acme",
                owner_id="r1",
                owner_name="Rita",
                new_owner_id="r3",
                new_owner_name="Rosa",
                arr=100_000.0,
            ),
            Account(
                build_id=build.id,
                sfdc_account_id="acc-2",
                account_name="Globex",
                owner_id="r3",
                owner_name="Rosa",
                arr=200_000.0,
                atr=10_000.0,
            ),
            Account(build_id=build.id, sfdc_account_id="acc-3", account_name="Hooli", owner_id="r1", owner_name="Rita"),
            Opportunity(build_id=build.id, sfdc_opportunity_id="opp-1", sfdc_account_id="acc-1", owner_id="r1"),
            ManagerReassignment(
                build_id=build.id,
                sfdc_account_id="acc-1",
                account_name="Acme",
                current_owner_id="r1",
                current_owner_name="Rita",
                proposed_owner_id="r3",
                proposed_owner_name="Rosa",
                approval_status="approved",
                manager_user_id="flm-1",
                proposer_role="FLM",
            ),
            ManagerReassignment(
                build_id=build.id,
                sfdc_account_id="acc-3",
                account_name="Hooli",
                current_owner_id="r1",
                current_owner_name="Rita",
                proposed_owner_id="r3",
                proposed_owner_name="Rosa",
                approval_status="pending_slm",
                manager_user_id="flm-1",
                proposer_role="FLM",
            ),
            ManagerReassignment(
                build_id=build.id,
                sfdc_account_id="acc-3",
                account_name="Hooli",
                current_owner_id="r1",
                current_owner_name="Rita",
                proposed_owner_id="r1",
                proposed_owner_name="Rita",
                approval_status="rejected",
                manager_user_id="slm-1",
                proposer_role="SLM",
            ),
        ]
    )
    db_session.commit()
    return build.id


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "revops": ActorUser(user_id="revops-1", role=Role.REVOPS, correlation_id="corr-notes"),
        "leadership": ActorUser(user_id="lead-1", role=Role.LEADERSHIP, correlation_id="corr-notes"),
        "slm": ActorUser(user_id="slm-1", role=Role.SLM, manager_name="Sam", correlation_id="corr-notes"),
        "slm_other": ActorUser(user_id="slm-2", role=Role.SLM, manager_name="Sara", correlation_id="corr-notes"),
        "flm": ActorUser(user_id="flm-1", role=Role.FLM, manager_name="Fiona", correlation_id="corr-notes"),
        "guest": ActorUser(user_id="guest-1", role=Role.DEFAULT, correlation_id="corr-notes"),
    }
    state = {"current": "flm"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_notes_create_list_and_update_with_row_version(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("flm")
    created = test_client.post(
        f"/api/bookops/builds/{build_id}/accounts/acc-3/notes",
        json={"note_text": "  Customer asked for continuity  ", "category": "concern", "tags": ["renewal"]},
    )
    assert created.status_code == 201, created.text
    note = created.json()
    assert note["note_text"] == "Customer asked for continuity"
    assert note["status"] == "open"
    assert note["manager_user_id"] == "flm-1"

    listing = test_client.get(f"/api/bookops/builds/{build_id}/accounts/acc-3/notes")
    assert [item["id"] for item in listing.json()] == [note["id"]]

    resolved = test_client.patch(f"/api/bookops/notes/{note['id']}", json={"row_version": 1, "status": "resolved"})
    assert resolved.status_code == 200, resolved.text
    assert resolved.json()["status"] == "resolved"
    assert resolved.json()["row_version"] == 2

    stale = test_client.patch(f"/api/bookops/notes/{note['id']}", json={"row_version": 1, "note_text": "late edit"})
    assert stale.status_code == 409
    assert stale.json()["code"] == "bookops_note_update_failed"

    stored = db_session.scalar(select(ManagerNote).where(ManagerNote.id == uuid.UUID(note["id"])))
    assert stored is not None
    assert stored.note_text == "Customer asked for continuity"
    assert [item["event_type"] for item in events.published_events] == ["bookops.note.created", "bookops.note.updated"]


def test_notes_respect_hierarchy_and_authorship(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
) -> None:
    test_client, set_actor = client
    set_actor("flm")
    note = test_client.post(
        f"/api/bookops/builds/{build_id}/accounts/acc-3/notes",
        json={"note_text": "Check territory"},
    ).json()

    set_actor("slm_other")
    hidden = test_client.get(f"/api/bookops/builds/{build_id}/accounts/acc-3/notes")
    assert hidden.status_code == 404
    hidden_edit = test_client.patch(f"/api/bookops/notes/{note['id']}", json={"row_version": 1, "status": "resolved"})
    assert hidden_edit.status_code == 404

    set_actor("slm")
    not_author = test_client.patch(f"/api/bookops/notes/{note['id']}", json={"row_version": 1, "status": "resolved"})
    assert not_author.status_code == 403

    set_actor("revops")
    escalated = test_client.patch(f"/api/bookops/notes/{note['id']}", json={"row_version": 1, "status": "escalated"})
    assert escalated.status_code == 200
    assert escalated.json()["status"] == "escalated"

    set_actor("guest")
    denied = test_client.post(f"/api/bookops/builds/{build_id}/accounts/acc-3/notes", json={"note_text": "hi"})
    assert denied.status_code == 403


def test_note_rejects_reassignment_from_other_account(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
    db_session: Session,
) -> None:
    test_client, set_actor = client
    other = db_session.scalar(select(ManagerReassignment).where(ManagerReassignment.sfdc_account_id == "acc-1"))
    assert other is not None

    set_actor("revops")
    response = test_client.post(
        f"/api/bookops/builds/{build_id}/accounts/acc-3/notes",
        json={"note_text": "Linked", "reassignment_id": str(other.id)},
    )
    assert response.status_code == 422
    assert response.json()["message"] == "invalid reassignment_id"


def test_owner_report_compares_before_and_after(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
) -> None:
    test_client, set_actor = client
    set_actor("leadership")
    response = test_client.get(f"/api/bookops/builds/{build_id}/reports/owners")
    assert response.status_code == 200, response.text
    body = response.json()

    before = {item["owner_id"]: item for item in body["before"]}
    after = {item["owner_id"]: item for item in body["after"]}
    assert [item["owner_id"] for item in body["before"]] == ["r3", "r1"]
    assert before["r1"]["account_count"] == 2
    assert before["r1"]["customer_count"] == 1
    assert before["r1"]["prospect_count"] == 1
    assert before["r3"]["total_atr"] == 10_000.0
    assert after["r3"]["account_count"] == 2
    assert after["r3"]["total_arr"] == 300_000.0
    assert after["r1"]["total_arr"] == 0.0


def test_manager_summary_is_restricted_for_managers(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
) -> None:
    test_client, set_actor = client
    set_actor("revops")
    everyone = test_client.get(f"/api/bookops/builds/{build_id}/reports/managers").json()
    assert [item["manager_user_id"] for item in everyone] == ["flm-1", "slm-1"]
    assert everyone[0]["approved"] == 1
    assert everyone[0]["pending"] == 1
    assert everyone[1]["rejected"] == 1

    set_actor("flm")
    own = test_client.get(f"/api/bookops/builds/{build_id}/reports/managers").json()
    assert [item["manager_user_id"] for item in own] == ["flm-1"]

    set_actor("guest")
    denied = test_client.get(f"/api/bookops/builds/{build_id}/reports/managers")
    assert denied.status_code == 403
    assert denied.json()["code"] == "bookops_report_managers_failed"


def test_build_summary_counts(
    client: tuple[TestClient, Callable[[str], None]],
    build_id: uuid.UUID,
) -> None:
    test_client, set_actor = client
    set_actor("revops")
    response = test_client.get(f"/api/bookops/builds/{build_id}/reports/summary")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "IN_REVIEW"
    assert body["account_count"] == 3
    assert body["customer_count"] == 2
    assert body["opportunity_count"] == 1
    assert body["rep_count"] == 2
    assert body["assigned_account_count"] == 1
    assert body["proposals_by_status"] == {"approved": 1, "pending_slm": 1, "rejected": 1}
    assert body["same_build_conflicts"] == 0
    assert body["cross_build_conflicts"] == 0
