from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.bookops.api import get_current_user as bookops_get_current_user
from app.bookops.models import Account, BookOpsJob, SalesRep
from app.bookops.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.rbac import Role
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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
    response = client.post("/api/bookops/builds", json={"name": name}, headers={"X-Correlation-Id": correlation_id})
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    _create_build(client, "FY27 OTel", "otel-corr-1")

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_engine_span_carries_build_and_counts(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    build = _create_build(client, "FY27 Engine Spans", "otel-engine-1")
    build_id = uuid.UUID(build["id"])
    db_session.add_all(
        [
            SalesRep(build_id=build_id, rep_id="r1", name="Rita", region="West"),
            Account(build_id=build_id, sfdc_account_id="acc-1", account_name="Acme", sales_territory="West", arr=10.0),
            Account(build_id=build_id, sfdc_account_id="acc-2", account_name="Globex"),
        ]
    )
    db_session.commit()

    response = client.post(f"/api/bookops/builds/{build_id}/assignments/generate")
    assert response.status_code == 200

    engine_spans = [span for span in span_exporter.get_finished_spans() if span.name == "bookops.engine.generate"]
    assert engine_spans
    attributes = engine_spans[-1].attributes
    assert attributes.get("build_id") == str(build_id)
    assert attributes.get("account_count") == 2
    assert attributes.get("rep_count") == 1
    assert attributes.get("out_of_scope") == 1


def test_job_span_contains_job_id_and_correlation(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    build = _create_build(client, "FY27 Job Spans", "otel-job-corr-1")

    reset = client.post(
        f"/api/bookops/builds/{build['id']}/reset?sync=true",
        headers={"X-Correlation-Id": "otel-job-corr-1"},
    )
    assert reset.status_code == 200

    job = db_session.scalar(
        select(BookOpsJob).where(BookOpsJob.job_type == "BUILD_RESET").order_by(BookOpsJob.created_at.desc())
    )
    assert job is not None

    spans = span_exporter.get_finished_spans()
    job_spans = [span for span in spans if span.name == "bookops.job.run"]
    assert job_spans
    assert any(
        span.attributes.get("job_id") == str(job.id)
        and span.attributes.get("job_type") == "BUILD_RESET"
        and span.attributes.get("correlation_id") == "otel-job-corr-1"
        for span in job_spans
    )
    assert any(span.name == "bookops.reset.run" for span in spans)
