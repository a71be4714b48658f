from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app, rate_limit_store
from app.middleware.rate_limit import InMemoryRateLimitStore


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
    rate_limit_store.clear()
    yield
    rate_limit_store.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(
            sub="user-1",
            roles=[
                "automation.workflows.read",
                "automation.workflows.manage",
                "automation.webhooks.read",
                "automation.webhooks.manage",
            ],
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _workflow_body(index: int) -> dict:
    return {"name": f"Rate limit workflow {index}", "entity_type": "lead", "trigger_type": "create"}


def test_mutating_automation_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [
        client.post("/api/automation/workflows", json=_workflow_body(index), headers={"X-Correlation-Id": "rl-corr"})
        for index in range(5)
    ]

    assert [response.status_code for response in responses] == [201, 201, 201, 429, 429]
    limited = responses[3]
    body = limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] == "rl-corr"
    assert int(limited.headers["Retry-After"]) >= 1


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    assert client.post("/api/automation/workflows", json=_workflow_body(0)).status_code == 201

    responses = [client.get("/api/automation/workflows") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(4):
        client.post("/api/automation/workflows", json=_workflow_body(index))

    webhook = client.post(
        "/api/automation/webhooks",
        json={"name": "Sync", "url": "https://hooks.example.com/a", "events": ["lead.created"]},
    )
    assert webhook.status_code == 201


def test_disabled_limiter_lets_everything_through(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    statuses = [client.post("/api/automation/workflows", json=_workflow_body(index)).status_code for index in range(5)]
    assert statuses == [201] * 5


def test_store_refills_over_time_and_evicts_idle_buckets() -> None:
    now = {"value": 1000.0}
    store = InMemoryRateLimitStore(idle_ttl_seconds=600, clock=lambda: now["value"])
    key = ("user-1", "workflows")

    assert store.take(key, capacity=2, window_seconds=60) == (True, 0)
    assert store.take(key, capacity=2, window_seconds=60) == (True, 0)
    allowed, retry_after = store.take(key, capacity=2, window_seconds=60)
    assert allowed is False
    assert retry_after == 30

    now["value"] += 31
    assert store.take(key, capacity=2, window_seconds=60)[0] is True

    now["value"] += 601
    store.take(("user-2", "webhooks"), capacity=2, window_seconds=60)
    assert len(store) == 1
