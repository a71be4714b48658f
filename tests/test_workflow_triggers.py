from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.automation.models import Workflow, WorkflowRun, WorkflowStep
from app.automation.triggers import WorkflowTriggerService, parse_entity_event
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.celery_app import workflow_advance_task
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app, rate_limit_store
from app.records.models import Deal, Task


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
    monkeypatch.setenv("AUTO_RUN_WORKFLOW_JOBS", "true")
    get_settings.cache_clear()
    rate_limit_store.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    rate_limit_store.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="trigger-admin", roles=["automation.workflows.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _workflow(session: Session, trigger_type: str = "update", **overrides: Any) -> Workflow:
    workflow = Workflow(
        name=overrides.pop("name", f"deal {trigger_type}"),
        entity_type=overrides.pop("entity_type", "deal"),
        trigger_type=trigger_type,
        is_active=overrides.pop("is_active", True),
        steps=[
            WorkflowStep(
                position=0,
                step_type="condition",
                config={"field": "status", "operator": "equals", "value": "won"},
            ),
            WorkflowStep(
                position=1,
                step_type="action",
                config={"action_type": "create_task", "title": "Send contract", "priority": "high"},
            ),
        ],
    )
    session.add(workflow)
    session.commit()
    return workflow


def _won_deal(session: Session) -> Deal:
    deal = Deal(title="Acme renewal", value=Decimal("1200.00"), status="won")
    session.add(deal)
    session.commit()
    return deal


def _envelope(deal: Deal, event_type: str = "deal.updated") -> dict[str, Any]:
    return {
        "event_type": event_type,
        "entity_type": "deal",
        "entity_id": str(deal.id),
        "snapshot": {"id": str(deal.id), "title": deal.title, "status": deal.status},
    }


def test_parse_entity_event() -> None:
    entity_id = uuid.uuid4()

    parsed = parse_entity_event({"event_type": "lead.created", "entity_id": str(entity_id), "snapshot": {"a": 1}})
    assert parsed is not None
    ref, trigger_type, snapshot = parsed
    assert (ref.type, ref.id, trigger_type, snapshot) == ("lead", entity_id, "create", {"a": 1})

    assert parse_entity_event({"event_type": "invoice.created", "entity_id": str(entity_id)}) is None
    assert parse_entity_event({"event_type": "lead.archived", "entity_id": str(entity_id)}) is None
    assert parse_entity_event({"event_type": "lead.updated", "entity_id": "not-a-uuid"}) is None
    assert parse_entity_event({"event_type": "lead.updated"}) is None


def test_matching_active_workflows_run_inline(db_session: Session) -> None:
    matching = _workflow(db_session, "update")
    _workflow(db_session, "create")
    _workflow(db_session, "update", name="inactive", is_active=False)
    _workflow(db_session, "update", name="lead", entity_type="lead")
    deal = _won_deal(db_session)

    run_ids = WorkflowTriggerService().handle_entity_event(db_session, _envelope(deal))

    assert len(run_ids) == 1
    run = db_session.get(WorkflowRun, run_ids[0])
    assert run is not None
    assert run.workflow_id == matching.id
    assert run.trigger_type == "update"
    assert run.status == "completed"
    assert db_session.scalars(select(Task.title)).all() == ["Send contract"]


def test_runs_are_enqueued_when_not_inline(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTO_RUN_WORKFLOW_JOBS", "false")
    get_settings.cache_clear()
    queued: list[str] = []
    monkeypatch.setattr(workflow_advance_task, "delay", lambda run_id: queued.append(run_id))
    _workflow(db_session, "update")
    deal = _won_deal(db_session)

    run_ids = WorkflowTriggerService().handle_entity_event(db_session, _envelope(deal))

    assert queued == [str(run_ids[0])]
    run = db_session.get(WorkflowRun, run_ids[0])
    assert run is not None
    assert run.status == "running"
    assert run.cursor == 0


def test_enqueue_failure_falls_back_to_inline(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTO_RUN_WORKFLOW_JOBS", "false")
    get_settings.cache_clear()

    def broker_down(run_id: str) -> None:
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(workflow_advance_task, "delay", broker_down)
    _workflow(db_session, "update")
    deal = _won_deal(db_session)

    run_ids = WorkflowTriggerService().handle_entity_event(db_session, _envelope(deal))

    run = db_session.get(WorkflowRun, run_ids[0])
    assert run is not None
    assert run.status == "completed"


def test_published_entity_events_start_runs(client: TestClient, db_session: Session) -> None:
    _workflow(db_session, "delete")
    deal = _won_deal(db_session)

    events.publish({**_envelope(deal, "deal.deleted"), "correlation_id": "evt-corr-1"})

    run = db_session.scalar(select(WorkflowRun))
    assert run is not None
    assert run.trigger_type == "delete"
    assert run.status == "completed"
    assert run.correlation_id == "evt-corr-1"
    assert any(event["event_type"] == "automation.workflow_run.completed" for event in events.published_events)
