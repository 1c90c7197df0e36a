from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.bookops.api import get_current_user as bookops_get_current_user
from app.bookops.models import Account, BookOpsJob
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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="revops-1",
            role=Role.REVOPS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[bookops_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_build(client: TestClient, name: str, correlation_id: str) -> dict:
    response = client.post(
        "/api/bookops/builds",
        json={"name": name},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/bookops/builds/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/bookops/builds/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_unsafe_correlation_id_is_sanitized(client: TestClient) -> None:
    response = client.get(f"/api/bookops/builds/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc <script>"})
    assert response.headers.get("x-correlation-id") == "abcscript"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_build(client, "FY27 Audit", "corr-audit-1")

    build_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "bookops.build"]
    assert build_audits
    assert build_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    _create_build(client, "FY27 Events", "corr-event-1")

    created_events = [item for item in events.published_events if item.get("event_type") == "bookops.build.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_job_runner_uses_job_correlation_id(client: TestClient, db_session: Session) -> None:
    build = _create_build(client, "FY27 Jobs", "corr-job-setup")
    db_session.add(
        Account(
            build_id=uuid.UUID(build["id"]),
            sfdc_account_id="acc-1",
            account_name="Acme",
            owner_id="r1",
            new_owner_id="r2",
            new_owner_name="Ravi",
        )
    )
    db_session.commit()

    reset = client.post(
        f"/api/bookops/builds/{build['id']}/reset?sync=true",
        headers={"X-Correlation-Id": "corr-job-1"},
    )
    assert reset.status_code == 200
    assert reset.json()["status"] == "Succeeded"

    job = db_session.scalar(
        select(BookOpsJob).where(BookOpsJob.job_type == "BUILD_RESET").order_by(BookOpsJob.created_at.desc())
    )
    assert job is not None
    assert job.correlation_id == "corr-job-1"

    job_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "bookops.job"]
    assert job_audits
    assert any(entry.get("correlation_id") == "corr-job-1" for entry in job_audits)

    reset_events = [
        item
        for item in events.published_events
        if item.get("event_type") in {"bookops.build.reset", "bookops.job.finished"}
    ]
    assert len(reset_events) == 2
    assert all(item.get("correlation_id") == "corr-job-1" for item in reset_events)


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/bookops/builds",
        json={"name": "Rate Limit Build 1"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/bookops/builds",
        json={"name": "Rate Limit Build 2"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
