from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.bookops.api import get_current_user as bookops_get_current_user
from app.bookops.models import BookOpsJob
from app.bookops.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.rbac import Role
from app.logging import JsonLogFormatter
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    build_id = uuid.uuid4()
    path = f"/api/bookops/builds/{build_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/bookops/builds/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_job_context_and_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    build = client.post("/api/bookops/builds", json={"name": "FY27 Logging"}, headers={"X-Correlation-Id": "abc-123"})
    assert build.status_code == 201

    reset = client.post(
        f"/api/bookops/builds/{build.json()['id']}/reset?sync=true",
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert reset.status_code == 200

    job = db_session.scalar(
        select(BookOpsJob).where(BookOpsJob.job_type == "BUILD_RESET").order_by(BookOpsJob.created_at.desc())
    )
    assert job is not None

    job_records = [record for record in caplog.records if record.name == "app.bookops.jobs"]
    assert job_records
    assert any(
        getattr(record, "job_id", None) == str(job.id)
        and getattr(record, "job_type", None) == "BUILD_RESET"
        and getattr(record, "correlation_id", None) == "abc-123"
        and record.getMessage() in {"job.started", "job.finished"}
        for record in job_records
    )

    reset_records = [record for record in caplog.records if record.name == "app.bookops.reset"]
    assert any(
        record.getMessage() == "reset.table_finished" and getattr(record, "correlation_id", None) == "abc-123"
        for record in reset_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.bookops.engine",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "engine.generated",
            "correlation_id": "corr-1",
            "build_id": "build-1",
            "total": 3,
            "secret_token": "hidden",
            "error": "x" * 600,
        }
    )

    payload = JsonLogFormatter().format(record)

    assert '"msg": "engine.generated"' in payload
    assert '"correlation_id": "corr-1"' in payload
    assert '"build_id": "build-1"' in payload
    assert '"total": 3' in payload
    assert "secret_token" not in payload
    assert "x" * 501 not in payload
