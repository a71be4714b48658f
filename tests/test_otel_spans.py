from __future__ import annotations

import os
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app, rate_limit_store
from app.otel import setup_inmemory_otel
from app.webhooks import api as webhooks_api


ALL_PERMISSIONS = [
    "automation.workflows.read",
    "automation.workflows.manage",
    "automation.workflows.execute",
    "automation.webhooks.read",
    "automation.webhooks.manage",
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    rate_limit_store.clear()
    yield
    get_settings.cache_clear()
    rate_limit_store.clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def _create_workflow(client: TestClient, steps: list[dict]) -> str:
    response = client.post(
        "/api/automation/workflows",
        json={"name": "Traced", "entity_type": "lead", "trigger_type": "manual", "steps": steps},
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_workflow_run_span_carries_run_and_correlation(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    workflow_id = _create_workflow(
        client,
        [{"step_type": "action", "config": {"action_type": "create_task", "title": "Traced task"}}],
    )

    executed = client.post(
        f"/api/automation/workflows/{workflow_id}/execute",
        json={},
        headers={"X-Correlation-Id": "otel-run-1"},
    )
    assert executed.status_code == 200
    run = executed.json()

    spans = span_exporter.get_finished_spans()
    run_spans = [span for span in spans if span.name == "automation.workflow_run.advance"]
    assert run_spans
    assert any(
        span.attributes.get("run_id") == run["id"]
        and span.attributes.get("workflow_id") == workflow_id
        and span.attributes.get("correlation_id") == "otel-run-1"
        and span.attributes.get("status") == "completed"
        for span in run_spans
    )
    action_spans = [span for span in spans if span.name == "automation.workflow_step.action"]
    assert any(span.attributes.get("action_type") == "create_task" for span in action_spans)


def test_failed_action_marks_span_as_error(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    workflow_id = _create_workflow(
        client,
        [{"step_type": "action", "config": {"action_type": "send_email", "template_name": "missing-template"}}],
    )

    executed = client.post(f"/api/automation/workflows/{workflow_id}/execute", json={})
    assert executed.status_code == 200
    assert executed.json()["status"] == "failed"

    action_spans = [
        span for span in span_exporter.get_finished_spans() if span.name == "automation.workflow_step.action"
    ]
    assert action_spans
    assert action_spans[-1].status.status_code == StatusCode.ERROR


def test_webhook_attempt_span_records_status_code(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        webhooks_api.webhook_service.dispatcher,
        "transport",
        httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
    )
    webhook = client.post(
        "/api/automation/webhooks",
        json={"name": "Traced hook", "url": "https://hooks.example.com/t", "events": ["deal.created"]},
    )
    assert webhook.status_code == 201

    tested = client.post(
        f"/api/automation/webhooks/{webhook.json()['id']}/test",
        headers={"X-Correlation-Id": "otel-hook-1"},
    )
    assert tested.status_code == 200

    attempt_spans = [span for span in span_exporter.get_finished_spans() if span.name == "webhooks.delivery.attempt"]
    assert len(attempt_spans) == 1
    span = attempt_spans[0]
    assert span.attributes.get("webhook_id") == webhook.json()["id"]
    assert span.attributes.get("delivery_id") == tested.json()["delivery"]["id"]
    assert span.attributes.get("http.status_code") == 500
    assert span.attributes.get("correlation_id") == "otel-hook-1"
    assert span.status.status_code == StatusCode.ERROR
