from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app, rate_limit_store


ALL_PERMISSIONS = [
    "automation.workflows.read",
    "automation.workflows.manage",
    "automation.workflows.execute",
]


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    rate_limit_store.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    rate_limit_store.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=ALL_PERMISSIONS)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_correlation_id_flows_to_audit_runs_and_events(client: TestClient) -> None:
    headers = {"X-Correlation-Id": "corr-flow-1"}
    created = client.post(
        "/api/automation/workflows",
        json={
            "name": "Correlated",
            "entity_type": "lead",
            "trigger_type": "manual",
            "steps": [{"step_type": "action", "config": {"action_type": "create_task", "title": "Follow up"}}],
        },
        headers=headers,
    )
    assert created.status_code == 201
    assert created.headers["x-correlation-id"] == "corr-flow-1"

    executed = client.post(f"/api/automation/workflows/{created.json()['id']}/execute", json={}, headers=headers)
    assert executed.status_code == 200
    assert executed.json()["correlation_id"] == "corr-flow-1"

    assert {entry["correlation_id"] for entry in audit.audit_entries} == {"corr-flow-1"}
    finished = [event for event in events.published_events if event["event_type"] == "automation.workflow_run.completed"]
    assert finished
    assert finished[0]["correlation_id"] == "corr-flow-1"


def test_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/automation/workflows/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-err-1"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "automation_workflow_get_failed",
        "message": "workflow not found",
        "details": "workflow not found",
        "correlation_id": "corr-err-1",
    }


def test_missing_header_gets_generated_id(client: TestClient) -> None:
    response = client.get("/api/automation/workflows")

    assert response.status_code == 200
    uuid.UUID(response.headers["x-correlation-id"])
