from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import timedelta

import httpx
import pytest
from celery.schedules import crontab
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.models import Workflow, WorkflowRun, WorkflowStep
from app.automation.scheduler import EntityRef
from app.core import celery_app as jobs
from app.core.config import get_settings
from app.core.database import Base
from app.records.models import Task
from app.webhooks.models import Webhook, WebhookDelivery, utcnow


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(jobs, "SessionLocal", SessionLocal)
    get_settings.cache_clear()
    yield SessionLocal
    get_settings.cache_clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _workflow(db_session: Session, steps: list[WorkflowStep], **overrides) -> Workflow:
    row = Workflow(
        name=overrides.pop("name", "Job workflow"),
        entity_type=overrides.pop("entity_type", "lead"),
        trigger_type=overrides.pop("trigger_type", "manual"),
        steps=steps,
        **overrides,
    )
    db_session.add(row)
    db_session.commit()
    return row


def test_beat_schedule_registers_periodic_sweeps() -> None:
    schedule = jobs.celery_app.conf.beat_schedule

    assert set(schedule) == {"webhook-retry-sweep", "workflow-resume-sweep", "workflow-time-based-tick"}
    assert schedule["webhook-retry-sweep"]["task"] == "app.tasks.webhook_retry_sweep"
    assert schedule["webhook-retry-sweep"]["schedule"] == 300.0
    assert schedule["workflow-resume-sweep"]["schedule"] == 60.0
    assert isinstance(schedule["workflow-time-based-tick"]["schedule"], crontab)


def test_run_job_logs_and_swallows_failures(session_factory: sessionmaker, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    def work(session: Session) -> str:
        raise RuntimeError("database went away")

    assert jobs.run_job("broken_job", work) is None

    failed = [record for record in caplog.records if record.getMessage() == "job.failed"]
    assert failed
    assert getattr(failed[0], "job_type", None) == "broken_job"
    assert getattr(failed[0], "error", None) == "database went away"
    finished = [record for record in caplog.records if record.getMessage() == "job.finished"]
    assert getattr(finished[-1], "status", None) == "failed"


def test_workflow_advance_task_runs_to_completion(db_session: Session) -> None:
    workflow = _workflow(
        db_session,
        [WorkflowStep(position=0, step_type="action", config={"action_type": "create_task", "title": "From worker"})],
    )
    run = jobs.workflow_scheduler.start_run(db_session, workflow, "manual", EntityRef(type="lead"))

    assert jobs.workflow_advance_task(str(run.id)) == "completed"

    db_session.expire_all()
    assert db_session.get(WorkflowRun, run.id).status == "completed"
    assert db_session.scalar(select(Task).where(Task.workflow_run_id == run.id)) is not None


def test_workflow_resume_sweep_task_resumes_due_runs(db_session: Session) -> None:
    workflow = _workflow(
        db_session,
        [
            WorkflowStep(position=0, step_type="delay", config={"duration": 5, "unit": "minutes"}),
            WorkflowStep(position=1, step_type="action", config={"action_type": "create_task", "title": "After wait"}),
        ],
    )
    run = jobs.workflow_scheduler.start_run(db_session, workflow, "manual", EntityRef(type="lead"))
    run = jobs.workflow_scheduler.advance(db_session, run.id)
    assert run.status == "waiting"

    assert jobs.workflow_resume_sweep_task() == []

    run.resume_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    assert jobs.workflow_resume_sweep_task() == [str(run.id)]
    db_session.expire_all()
    assert db_session.get(WorkflowRun, run.id).status == "completed"


def test_workflow_time_based_tick_task_starts_hourly_workflows(db_session: Session) -> None:
    workflow = _workflow(
        db_session,
        [WorkflowStep(position=0, step_type="action", config={"action_type": "create_task", "title": "Hourly sweep"})],
        trigger_type="time_based",
        trigger_config={"schedule": "hourly"},
    )

    started = jobs.workflow_time_based_tick_task()
    assert started is not None
    assert len(started) == 1
    assert jobs.workflow_time_based_tick_task() == []

    run = db_session.get(WorkflowRun, uuid.UUID(started[0]))
    assert run.workflow_id == workflow.id
    assert run.trigger_type == "time_based"


def test_webhook_tasks_deliver_and_sweep(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text="ok")

    monkeypatch.setattr(jobs.webhook_retry_scheduler.dispatcher, "transport", httpx.MockTransport(handler))
    webhook = Webhook(name="Worker hook", url="https://hooks.example.com/w", secret="s3cr3t", events=["lead.created"])
    db_session.add(webhook)
    db_session.commit()
    delivery = jobs.webhook_retry_scheduler.dispatcher.create_pending(
        db_session,
        webhook,
        "lead.created",
        {"event": "lead.created", "data": {"id": "lead-1"}},
    )

    assert jobs.webhook_deliver_task(str(delivery.id)) == "success"
    assert jobs.webhook_deliver_task(str(delivery.id)) is None
    assert len(requests) == 1

    db_session.expire_all()
    stored = db_session.get(WebhookDelivery, delivery.id)
    assert stored.status == "success"
    assert stored.attempts == 1

    assert jobs.webhook_retry_sweep_task() == {"attempted": 0, "abandoned": 0, "skipped": 0}
