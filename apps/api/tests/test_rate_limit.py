from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.bookops.api import get_current_user as bookops_get_current_user
from app.bookops.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.rbac import Role
from app.main import app
from app.middleware.rate_limit import _resolve_route_group, reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
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


def _bearer(subject: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": subject, "roles": ["revops"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_mutating_bookops_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = []
    for index in range(5):
        response = client.post("/api/bookops/builds", json={"name": f"Rate Limit Build {index}"})
        responses.append(response)

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["details"]["route_group"] == "builds"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/bookops/builds", json={"name": "Readable Build"})
    assert create.status_code == 201

    responses = [client.get("/api/bookops/builds") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_buckets_are_per_user(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/bookops/builds", json={"name": f"Alice {index}"}, headers=_bearer("alice")).status_code == 201
    assert client.post("/api/bookops/builds", json={"name": "Alice 3"}, headers=_bearer("alice")).status_code == 429
    assert client.post("/api/bookops/builds", json={"name": "Bob 0"}, headers=_bearer("bob")).status_code == 201


def test_route_groups_ignore_identifiers() -> None:
    assert _resolve_route_group("/api/bookops/builds") == "builds"
    assert (
        _resolve_route_group("/api/bookops/builds/3f7c9d2e-1b4a-4c8e-9f00-1234567890ab/assignments/apply")
        == "builds/assignments"
    )
    assert _resolve_route_group("/api/bookops/reassignments/42/approve") == "reassignments/approve"
    assert _resolve_route_group("/api/bookops") == "bookops"
