from __future__ import annotations

import uuid
from collections.abc import Callable, Collection, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.bookops.api import get_current_user
from app.bookops.models import Account, Build, ManagerNote, ManagerReassignment, Opportunity
from app.bookops.reset import (
    ACCOUNT_POLICY,
    OPPORTUNITY_POLICY,
    BuildResetter,
    ResetFailedError,
    SqlResetStore,
    is_timeout_error,
)
from app.bookops.service import ActorUser
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.core.rbac import Role
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


class FakeStore:
    def __init__(
        self,
        rows: dict[str, list[int]],
        *,
        failures: dict[str, list[Exception | None]] | None = None,
        poisoned: dict[int, Exception] | None = None,
        proposal_failures: list[Exception] | None = None,
    ) -> None:
        self.pending = {table: list(ids) for table, ids in rows.items()}
        self.failures = failures or {}
        self.poisoned = poisoned or {}
        self.proposal_failures = proposal_failures or []
        self.calls: list[tuple[str, list[int]]] = []
        self.rollbacks = 0

    def count_pending(self, table: str) -> int:
        return len(self.pending.get(table, []))

    def pending_ids(self, table: str, limit: int, exclude: Collection[Any]) -> list[int]:
        return [item for item in self.pending.get(table, []) if item not in exclude][:limit]

    def reset_batch(self, table: str, ids: list[int]) -> int:
        self.calls.append((table, list(ids)))
        queued = self.failures.get(table)
        if queued:
            error = queued.pop(0)
            if error is not None:
                raise error
        for item in ids:
            if item in self.poisoned:
                raise self.poisoned[item]
        for item in ids:
            self.pending[table].remove(item)
        return len(ids)

    def delete_proposals(self) -> int:
        if self.proposal_failures:
            raise self.proposal_failures.pop(0)
        return 4

    def rollback(self) -> None:
        self.rollbacks += 1


class QueryCanceled(Exception):
    sqlstate = "57014"


@pytest.fixture()
def settings() -> Settings:
    return Settings(reset_max_retries=3, reset_base_delay_ms=1000, reset_max_backoff_ms=8000, reset_delay_scale=1.0)


def _resetter(
    store: FakeStore,
    settings: Settings,
    sleeps: list[float],
    **kwargs: Any,
) -> BuildResetter:
    return BuildResetter(store, settings=settings, sleep=sleeps.append, **kwargs)


def test_reset_processes_both_tables_in_paced_batches(settings: Settings) -> None:
    store = FakeStore({"accounts": list(range(120)), "opportunities": list(range(5))})
    sleeps: list[float] = []

    result = _resetter(store, settings, sleeps).run()

    assert result["status"] == "completed"
    assert result["proposals_deleted"] == 4
    accounts = result["tables"]["accounts"]
    assert (accounts["processed"], accounts["remaining"], accounts["batches"]) == (120, 0, 3)
    opportunities = result["tables"]["opportunities"]
    assert (opportunities["processed"], opportunities["batches"]) == (5, 5)
    assert [len(ids) for table, ids in store.calls if table == "accounts"] == [50, 50, 20]
    assert sleeps == [0.2, 0.2, 2.0, 2.0, 2.0, 2.0]


def test_account_batch_shrinks_and_retries_after_timeout(settings: Settings) -> None:
    store = FakeStore({"accounts": list(range(30))}, failures={"accounts": [TimeoutError("statement timeout"), None]})
    sleeps: list[float] = []

    result = _resetter(store, settings, sleeps, policies=(ACCOUNT_POLICY,)).run()

    assert [len(ids) for _, ids in store.calls] == [30, 25, 5]
    assert sleeps == [1.0, 0.2]
    assert store.rollbacks == 1
    assert result["tables"]["accounts"]["processed"] == 30
    assert result["tables"]["accounts"]["batches"] == 2


def test_account_falls_back_to_single_record_when_retries_run_out(settings: Settings) -> None:
    failure = RuntimeError("deadlock detected")
    store = FakeStore({"accounts": list(range(12))}, failures={"accounts": [failure, failure, failure, failure, None]})
    sleeps: list[float] = []

    result = _resetter(store, settings, sleeps, policies=(ACCOUNT_POLICY,)).run()

    assert [len(ids) for _, ids in store.calls] == [12, 12, 12, 10, 1, 10, 1]
    assert sleeps == [1.0, 2.0, 4.0, 0.2, 0.2]
    assert result["status"] == "completed"
    assert result["tables"]["accounts"]["processed"] == 12
    assert result["tables"]["accounts"]["remaining"] == 0


def test_account_single_record_failure_raises_retry_safe_error(settings: Settings) -> None:
    failure = RuntimeError("deadlock detected")
    store = FakeStore({"accounts": [1, 2, 3]}, failures={"accounts": [failure] * 5})

    with pytest.raises(ResetFailedError) as raised:
        _resetter(store, settings, [], policies=(ACCOUNT_POLICY,)).run()

    error = raised.value
    assert error.table == "accounts"
    assert error.retry_safe is True
    assert str(error) == "resetting accounts failed after 3 retries: deadlock detected"
    payload = error.to_result()
    assert payload["progress"]["processed"] == 0
    assert payload["progress"]["remaining"] == 3
    assert payload["hint"] is not None
    assert store.pending["accounts"] == [1, 2, 3]


def test_opportunity_timeouts_trigger_emergency_bypass(settings: Settings) -> None:
    timeout = TimeoutError("canceling statement due to statement timeout")
    store = FakeStore({"opportunities": list(range(10))}, poisoned={item: timeout for item in range(10)})
    sleeps: list[float] = []

    result = _resetter(store, settings, sleeps, policies=(OPPORTUNITY_POLICY,)).run()

    assert result["status"] == "partial"
    progress = result["tables"]["opportunities"]
    assert progress["emergency_bypass"] is True
    assert progress["skipped"] == 3
    assert progress["processed"] == 0
    assert progress["remaining"] == 10
    assert sleeps == [3.0, 6.0, 8.0, 3.0, 2.0, 3.0, 6.0, 8.0, 3.0, 2.0, 3.0, 6.0, 8.0]


def test_opportunity_skips_failing_row_and_continues(settings: Settings) -> None:
    store = FakeStore({"opportunities": [1, 2, 3]}, poisoned={2: ValueError("check constraint violated")})
    sleeps: list[float] = []

    result = _resetter(store, settings, sleeps, policies=(OPPORTUNITY_POLICY,)).run()

    assert result["status"] == "partial"
    progress = result["tables"]["opportunities"]
    assert (progress["processed"], progress["skipped"], progress["remaining"]) == (2, 1, 1)
    assert progress["emergency_bypass"] is False
    assert store.pending["opportunities"] == [2]
    assert sleeps == [2.0, 3.0, 6.0, 8.0, 3.0, 2.0]


def test_cancel_stops_between_batches(settings: Settings) -> None:
    store = FakeStore({"accounts": list(range(120)), "opportunities": [1]})

    result = _resetter(store, settings, [], cancel_check=lambda: len(store.calls) >= 1).run()

    assert result["status"] == "cancelled"
    accounts = result["tables"]["accounts"]
    assert accounts["cancelled"] is True
    assert (accounts["processed"], accounts["remaining"]) == (50, 70)
    assert "opportunities" not in result["tables"]


def test_cancel_before_start_touches_nothing(settings: Settings) -> None:
    store = FakeStore({"accounts": [1]})

    result = _resetter(store, settings, [], cancel_check=lambda: True).run()

    assert result == {"proposals_deleted": 0, "tables": {}, "status": "cancelled"}
    assert store.calls == []


def test_delete_proposals_retries_timeouts_and_fails_fast_otherwise(settings: Settings) -> None:
    store = FakeStore({"accounts": []}, proposal_failures=[QueryCanceled("canceling statement")])
    sleeps: list[float] = []
    result = _resetter(store, settings, sleeps, policies=(ACCOUNT_POLICY,)).run()
    assert result["proposals_deleted"] == 4
    assert sleeps == [2.0]

    broken = FakeStore({"accounts": [1]}, proposal_failures=[RuntimeError("permission denied")])
    with pytest.raises(ResetFailedError) as raised:
        _resetter(broken, settings, []).run()
    assert raised.value.retry_safe is False
    assert raised.value.table == "manager_reassignments"
    assert raised.value.to_result()["hint"] is None
    assert broken.calls == []


def test_is_timeout_error_detection() -> None:
    class Wrapped(Exception):
        def __init__(self, orig: Exception) -> None:
            super().__init__("wrapped")
            self.orig = orig

    assert is_timeout_error(TimeoutError())
    assert is_timeout_error(QueryCanceled("canceled"))
    assert is_timeout_error(Wrapped(QueryCanceled("canceled")))
    assert is_timeout_error(RuntimeError("lock Timeout exceeded"))
    assert not is_timeout_error(RuntimeError("deadlock detected"))


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


@pytest.fixture()
def client(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("RESET_DELAY_SCALE", "0")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "revops": ActorUser(user_id="revops-1", role=Role.REVOPS, correlation_id="corr-reset"),
        "slm": ActorUser(user_id="slm-1", role=Role.SLM, manager_name="Sam", correlation_id="corr-reset"),
    }
    state = {"current": "revops"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _seed_assigned_build(session: Session, *, status: str = "IN_REVIEW") -> uuid.UUID:
    build = Build(name="FY27 Reset", status=status)
    session.add(build)
    session.flush()
    proposal = ManagerReassignment(
        build_id=build.id,
        sfdc_account_id="acc-1",
        account_name="Acme",
        current_owner_id="r1",
        proposed_owner_id="r2",
        proposed_owner_name="Ravi",
        approval_status="approved",
        manager_user_id="flm-1",
        proposer_role="FLM",
    )
    session.add_all(
        [
            Account(
                build_id=build.id,
                sfdc_account_id="acc-1",
                account_name="Acme",
                owner_id="r1",
                new_owner_id="r2",
                new_owner_name="Ravi",
            ),
            Account(build_id=build.id, sfdc_account_id="acc-2", account_name="Globex", owner_id="r1"),
            Opportunity(
                build_id=build.id,
                sfdc_opportunity_id="opp-1",
                sfdc_account_id="acc-1",
                owner_id="r1",
                new_owner_id="r2",
                new_owner_name="Ravi",
            ),
            proposal,
        ]
    )
    session.flush()
    session.add(
        ManagerNote(
            build_id=build.id,
            sfdc_account_id="acc-1",
            manager_user_id="flm-1",
            note_text="Moved to Ravi",
            reassignment_id=proposal.id,
        )
    )
    session.commit()
    return build.id


def test_reset_endpoint_clears_assignments(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    build_id = _seed_assigned_build(db_session)
    test_client, _ = client

    response = test_client.post(f"/api/bookops/builds/{build_id}/reset", params={"sync": "true"})
    assert response.status_code == 200, response.text
    job = response.json()
    assert job["status"] == "Succeeded"
    assert job["job_type"] == "BUILD_RESET"
    result = job["result"]
    assert result["proposals_deleted"] == 1
    assert (result["processed"], result["total"], result["remaining"]) == (2, 2, 0)
    assert result["tables"]["accounts"]["processed"] == 1
    assert result["tables"]["opportunities"]["processed"] == 1

    db_session.expire_all()
    assert all(account.new_owner_id is None for account in db_session.scalars(select(Account)).all())
    assert db_session.scalars(select(ManagerReassignment)).all() == []
    note = db_session.scalar(select(ManagerNote))
    assert note is not None
    assert note.reassignment_id is None
    build = db_session.get(Build, build_id)
    assert build is not None
    assert build.status == "IMPORTED"

    event_types = [item["event_type"] for item in events.published_events]
    assert "bookops.build.reset" in event_types
    assert event_types[-1] == "bookops.job.finished"


def test_reset_with_skipped_rows_is_partial_and_keeps_build_status(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    build_id = _seed_assigned_build(db_session)
    test_client, _ = client
    original_reset_batch = SqlResetStore.reset_batch

    def failing_reset_batch(self: SqlResetStore, table: str, ids: list[Any]) -> int:
        if table == "opportunities":
            raise ValueError("check constraint violated")
        return original_reset_batch(self, table, ids)

    monkeypatch.setattr(SqlResetStore, "reset_batch", failing_reset_batch)

    response = test_client.post(f"/api/bookops/builds/{build_id}/reset", params={"sync": "true"})
    assert response.status_code == 200, response.text
    job = response.json()
    assert job["status"] == "PartiallySucceeded"
    result = job["result"]
    assert result["status"] == "partial"
    assert result["tables"]["accounts"]["remaining"] == 0
    assert result["tables"]["opportunities"]["skipped"] == 1
    assert result["remaining"] == 1

    db_session.expire_all()
    build = db_session.get(Build, build_id)
    assert build is not None
    assert build.status == "IN_REVIEW"
    opportunity = db_session.scalar(select(Opportunity))
    assert opportunity is not None
    assert opportunity.new_owner_id == "r2"

    event_types = [item["event_type"] for item in events.published_events]
    assert "bookops.build.status_changed" not in event_types
    reset_event = next(item for item in events.published_events if item["event_type"] == "bookops.build.reset")
    assert reset_event["payload"]["status"] == "partial"



def test_reset_endpoint_requires_revops_and_mutable_build(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    build_id = _seed_assigned_build(db_session, status="FINALIZED")
    test_client, set_actor = client

    set_actor("slm")
    denied = test_client.post(f"/api/bookops/builds/{build_id}/reset", params={"sync": "true"})
    assert denied.status_code == 403
    assert denied.json()["code"] == "bookops_build_reset_failed"

    set_actor("revops")
    finalized = test_client.post(f"/api/bookops/builds/{build_id}/reset", params={"sync": "true"})
    assert finalized.status_code == 409
