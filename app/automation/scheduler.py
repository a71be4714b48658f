from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app import events
from app.automation.actions import ActionExecutor, ActionOutcome, ActionRunner, DryRunActionSimulator
from app.automation.collaborators import SqlEntityStore
from app.automation.conditions import evaluate_condition, resolve_field
from app.automation.errors import AutomationError, DependencyError, NotFoundError
from app.automation.models import Workflow, WorkflowRun, utcnow
from app.automation.schemas import (
    ActionStep,
    ConditionStep,
    DelayStep,
    ScheduleConfig,
    StepDefinition,
    WorkflowTestResult,
    WorkflowTestStep,
    step_list_adapter,
)
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.metrics import observe_job, observe_workflow_run, observe_workflow_step
from app.otel import get_tracer


logger = logging.getLogger("app.automation.runs")
tracer = get_tracer("app.automation.runs")

_DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


@dataclass(frozen=True)
class EntityRef:
    type: str
    id: uuid.UUID | None = None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def should_trigger(trigger_config: dict[str, Any] | None, now: datetime) -> bool:
    """Hourly tick check: hourly always fires, daily matches the hour, weekly matches day (0 = Sunday) and hour."""
    config = ScheduleConfig.model_validate(trigger_config or {"schedule": "daily"})
    now = as_utc(now)
    if config.schedule == "hourly":
        return True
    if config.schedule == "daily":
        return now.hour == config.hour
    sunday_based_weekday = (now.weekday() + 1) % 7
    return sunday_based_weekday == config.day and now.hour == config.hour


def _trace_entry(
    step: StepDefinition,
    outcome: str,
    *,
    detail: dict[str, Any] | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    return {
        "position": step.position,
        "step_type": step.step_type,
        "outcome": outcome,
        "at": utcnow().isoformat(),
        "error": error,
        "detail": detail or {},
    }


def _condition_detail(step: ConditionStep, snapshot: dict[str, Any]) -> dict[str, Any]:
    return {
        "field": step.config.field,
        "operator": step.config.operator,
        "expected": step.config.value,
        "actual": resolve_field(snapshot, step.config.field),
    }


class WorkflowRunScheduler:
    def __init__(
        self,
        executor: ActionRunner | None = None,
        simulator: ActionRunner | None = None,
        entity_store: SqlEntityStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor or ActionExecutor()
        self.simulator = simulator or DryRunActionSimulator()
        self.entity_store = entity_store or SqlEntityStore()
        self.sleep = sleep

    def start_run(
        self,
        session: Session,
        workflow: Workflow,
        trigger_type: str,
        entity_ref: EntityRef,
        snapshot: dict[str, Any] | None = None,
    ) -> WorkflowRun:
        run_id = uuid.uuid4()
        run = WorkflowRun(
            id=run_id,
            workflow_id=workflow.id,
            trigger_type=trigger_type,
            entity_type=entity_ref.type,
            entity_id=entity_ref.id,
            status="running",
            cursor=0,
            steps_snapshot=[
                {"position": step.position, "step_type": step.step_type, "config": step.config}
                for step in workflow.steps
            ],
            trace=[],
            context=self._seed_context(session, workflow.id, run_id, entity_ref, snapshot),
            correlation_id=get_correlation_id(),
            claimed_at=utcnow(),
            started_at=utcnow(),
        )
        session.add(run)
        session.commit()
        logger.info(
            "workflow_run.started",
            extra={"workflow_id": str(workflow.id), "run_id": str(run_id), "status": "running"},
        )
        return run

    def advance(self, session: Session, run_id: uuid.UUID) -> WorkflowRun:
        run = self._load_run(session, run_id)
        if run.status != "running":
            return run

        token = set_correlation_id(run.correlation_id)
        with tracer.start_as_current_span("automation.workflow_run.advance") as span:
            span.set_attribute("workflow_id", str(run.workflow_id))
            span.set_attribute("run_id", str(run.id))
            span.set_attribute("cursor", run.cursor)
            if run.correlation_id:
                span.set_attribute("correlation_id", run.correlation_id)
            try:
                self._walk(session, run)
            except Exception as exc:
                session.rollback()
                run = self._load_run(session, run_id)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception(
                    "workflow_run.crashed",
                    extra={"workflow_id": str(run.workflow_id), "run_id": str(run.id), "error": str(exc)[:500]},
                )
                if run.status == "running":
                    self._finish(session, run, "failed", error=f"unexpected error: {exc}"[:2000])
            finally:
                span.set_attribute("status", run.status)
                reset_correlation_id(token)
        return run

    def dry_run(
        self,
        session: Session,
        workflow: Workflow,
        entity_ref: EntityRef,
        snapshot: dict[str, Any] | None = None,
    ) -> WorkflowTestResult:
        steps = step_list_adapter.validate_python(
            [{"position": step.position, "step_type": step.step_type, "config": step.config} for step in workflow.steps]
        )
        context = self._seed_context(session, workflow.id, None, entity_ref, snapshot)
        results: list[WorkflowTestStep] = []
        status = "completed"

        for index, step in enumerate(steps):
            if isinstance(step, ConditionStep):
                entity = context.get("entity") or {}
                detail = _condition_detail(step, entity)
                if evaluate_condition(step.config, entity):
                    results.append(WorkflowTestStep(position=index, step_type="condition", outcome="passed", detail=detail))
                    continue
                results.append(
                    WorkflowTestStep(position=index, step_type="condition", outcome="short_circuited", detail=detail)
                )
                results.extend(
                    WorkflowTestStep(position=index + offset, step_type=rest.step_type, outcome="skipped")
                    for offset, rest in enumerate(steps[index + 1 :], start=1)
                )
                break
            if isinstance(step, DelayStep):
                results.append(
                    WorkflowTestStep(
                        position=index,
                        step_type="delay",
                        outcome="would_pause",
                        detail={"message": f"would pause for {step.config.duration} {step.config.unit}"},
                    )
                )
                continue
            try:
                outcome = self.simulator.execute(session, step.config, context)
            except AutomationError as exc:
                results.append(
                    WorkflowTestStep(
                        position=index,
                        step_type="action",
                        outcome="failed",
                        detail={"action_type": step.config.action_type, "code": exc.code},
                        error=exc.message,
                    )
                )
                status = "failed"
                break
            context.update(outcome.context_updates)
            results.append(
                WorkflowTestStep(
                    position=index,
                    step_type="action",
                    outcome=outcome.result,
                    detail={"action_type": step.config.action_type, **outcome.detail},
                )
            )

        return WorkflowTestResult(workflow_id=workflow.id, workflow_name=workflow.name, status=status, steps=results)

    def resume_due_runs(self, session: Session, now: datetime | None = None) -> list[uuid.UUID]:
        """Resumes waiting runs whose delay has elapsed and redrives running runs whose worker stopped heartbeating."""
        settings = get_settings()
        now = as_utc(now or utcnow())
        stale_before = now - timedelta(seconds=settings.workflow_run_claim_timeout_seconds)
        started = time.perf_counter()
        final_status = "failed"
        logger.info("job.started", extra={"job_type": "workflow_resume_sweep", "status": "running"})

        resumed: list[uuid.UUID] = []
        try:
            candidates = session.execute(
                select(WorkflowRun.id, WorkflowRun.status, WorkflowRun.claimed_at)
                .where(
                    or_(
                        and_(WorkflowRun.status == "waiting", WorkflowRun.resume_at <= now),
                        and_(WorkflowRun.status == "running", WorkflowRun.claimed_at <= stale_before),
                    )
                )
                .order_by(WorkflowRun.resume_at.asc().nulls_first(), WorkflowRun.started_at.asc())
                .limit(settings.workflow_resume_batch_size)
            ).all()

            for run_id, observed_status, observed_claim in candidates:
                if not self._claim_run(session, run_id, observed_status, observed_claim, now):
                    continue
                if observed_status == "running":
                    logger.warning(
                        "workflow_run.redriven",
                        extra={"run_id": str(run_id), "status": "running", "error": "claim expired"},
                    )
                self.advance(session, run_id)
                resumed.append(run_id)
            final_status = "succeeded"
        finally:
            duration = time.perf_counter() - started
            observe_job(job_type="workflow_resume_sweep", status=final_status, duration=duration)
            logger.info(
                "job.finished",
                extra={
                    "job_type": "workflow_resume_sweep",
                    "status": final_status,
                    "duration_ms": round(duration * 1000, 2),
                    "attempts": len(resumed),
                },
            )
        return resumed

    def run_time_based_workflows(self, session: Session, now: datetime | None = None) -> list[uuid.UUID]:
        now = as_utc(now or utcnow())
        bucket_start = now.replace(minute=0, second=0, microsecond=0)
        started = time.perf_counter()
        final_status = "failed"
        logger.info("job.started", extra={"job_type": "workflow_time_based_tick", "status": "running"})

        run_ids: list[uuid.UUID] = []
        try:
            workflows = session.scalars(
                select(Workflow)
                .where(
                    and_(
                        Workflow.trigger_type == "time_based",
                        Workflow.is_active.is_(True),
                        Workflow.deleted_at.is_(None),
                    )
                )
                .order_by(Workflow.created_at.asc())
            ).all()

            for workflow in workflows:
                if not should_trigger(workflow.trigger_config, now):
                    continue
                already_fired = session.scalar(
                    select(WorkflowRun.id)
                    .where(
                        and_(
                            WorkflowRun.workflow_id == workflow.id,
                            WorkflowRun.trigger_type == "time_based",
                            WorkflowRun.started_at >= bucket_start,
                        )
                    )
                    .limit(1)
                )
                if already_fired is not None:
                    continue
                run = self.start_run(session, workflow, "time_based", EntityRef(type=workflow.entity_type))
                self.advance(session, run.id)
                run_ids.append(run.id)
            final_status = "succeeded"
        finally:
            duration = time.perf_counter() - started
            observe_job(job_type="workflow_time_based_tick", status=final_status, duration=duration)
            logger.info(
                "job.finished",
                extra={
                    "job_type": "workflow_time_based_tick",
                    "status": final_status,
                    "duration_ms": round(duration * 1000, 2),
                },
            )
        return run_ids

    def _walk(self, session: Session, run: WorkflowRun) -> None:
        try:
            steps = step_list_adapter.validate_python(run.steps_snapshot)
        except PydanticValidationError as exc:
            self._finish(session, run, "failed", error=f"invalid step snapshot: {exc.error_count()} errors")
            return

        context = dict(run.context or {})
        while run.cursor < len(steps):
            index = run.cursor
            step = steps[index]

            if isinstance(step, ConditionStep):
                entity = context.get("entity") or {}
                detail = _condition_detail(step, entity)
                if evaluate_condition(step.config, entity):
                    self._record(session, run, step, index + 1, context, _trace_entry(step, "passed", detail=detail))
                    continue
                entries = [_trace_entry(step, "short_circuited", detail=detail)]
                entries.extend(_trace_entry(rest, "skipped") for rest in steps[index + 1 :])
                for entry in entries:
                    observe_workflow_step(entry["step_type"], entry["outcome"])
                run.trace = [*run.trace, *entries]
                run.cursor = len(steps)
                self._finish(session, run, "completed")
                return

            if isinstance(step, DelayStep):
                resume_at = utcnow() + _DELAY_UNITS[step.config.unit] * step.config.duration
                entry = _trace_entry(
                    step,
                    "waiting",
                    detail={"duration": step.config.duration, "unit": step.config.unit, "resume_at": resume_at.isoformat()},
                )
                run.trace = [*run.trace, entry]
                run.cursor = index + 1
                run.status = "waiting"
                run.resume_at = resume_at
                run.claimed_at = None
                session.add(run)
                session.commit()
                observe_workflow_step("delay", "waiting")
                observe_workflow_run("waiting")
                logger.info(
                    "workflow_run.waiting",
                    extra={
                        "workflow_id": str(run.workflow_id),
                        "run_id": str(run.id),
                        "step_position": index,
                        "status": "waiting",
                    },
                )
                return

            try:
                outcome = self._execute_action(session, run, step, context)
            except AutomationError as exc:
                session.rollback()
                entry = _trace_entry(
                    step,
                    "failed",
                    detail={"action_type": step.config.action_type, "code": exc.code, **exc.details},
                    error=exc.message,
                )
                observe_workflow_step("action", "failed")
                run.trace = [*run.trace, entry]
                self._finish(session, run, "failed", error=exc.message)
                return

            context.update(outcome.context_updates)
            entry = _trace_entry(step, outcome.result, detail={"action_type": step.config.action_type, **outcome.detail})
            self._record(session, run, step, index + 1, context, entry)

        self._finish(session, run, "completed")

    def _execute_action(
        self,
        session: Session,
        run: WorkflowRun,
        step: ActionStep,
        context: dict[str, Any],
    ) -> ActionOutcome:
        settings = get_settings()
        retries = 0
        with tracer.start_as_current_span("automation.workflow_step.action") as span:
            span.set_attribute("run_id", str(run.id))
            span.set_attribute("step_position", step.position or 0)
            span.set_attribute("action_type", step.config.action_type)
            while True:
                try:
                    return self.executor.execute(session, step.config, context)
                except DependencyError as exc:
                    session.rollback()
                    if retries >= settings.workflow_action_max_retries:
                        span.set_status(Status(StatusCode.ERROR, exc.message))
                        raise
                    retries += 1
                    logger.warning(
                        "workflow_step.retrying",
                        extra={
                            "workflow_id": str(run.workflow_id),
                            "run_id": str(run.id),
                            "step_position": step.position,
                            "attempts": retries,
                            "error": exc.message,
                        },
                    )
                    self.sleep(settings.workflow_action_retry_backoff_seconds)
                except AutomationError as exc:
                    span.set_status(Status(StatusCode.ERROR, exc.message))
                    raise

    def _record(
        self,
        session: Session,
        run: WorkflowRun,
        step: StepDefinition,
        next_cursor: int,
        context: dict[str, Any],
        entry: dict[str, Any],
    ) -> None:
        run.trace = [*run.trace, entry]
        run.context = dict(context)
        run.cursor = next_cursor
        run.claimed_at = utcnow()
        session.add(run)
        session.commit()
        observe_workflow_step(step.step_type, entry["outcome"])

    def _claim_run(
        self,
        session: Session,
        run_id: uuid.UUID,
        observed_status: str,
        observed_claim: datetime | None,
        now: datetime,
    ) -> bool:
        claim_matches = (
            WorkflowRun.claimed_at.is_(None) if observed_claim is None else WorkflowRun.claimed_at == observed_claim
        )
        conditions = [WorkflowRun.id == run_id, WorkflowRun.status == observed_status, claim_matches]
        if observed_status == "waiting":
            conditions.append(WorkflowRun.resume_at <= now)
        claimed = session.execute(
            update(WorkflowRun)
            .where(and_(*conditions))
            .values(status="running", resume_at=None, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return claimed.rowcount == 1

    def _finish(self, session: Session, run: WorkflowRun, status: str, *, error: str | None = None) -> None:
        now = utcnow()
        run.status = status
        run.resume_at = None
        run.claimed_at = None
        run.finished_at = now
        run.error_message = error
        session.add(run)

        workflow = session.get(Workflow, run.workflow_id)
        if workflow is not None:
            workflow.execution_count = (workflow.execution_count or 0) + 1
            workflow.last_executed_at = now
            session.add(workflow)
        session.commit()

        observe_workflow_run(status)
        logger.info(
            "workflow_run.finished",
            extra={
                "workflow_id": str(run.workflow_id),
                "run_id": str(run.id),
                "status": status,
                "error": error,
            },
        )
        events.publish(
            {
                "event_type": f"automation.workflow_run.{status}",
                "workflow_id": str(run.workflow_id),
                "run_id": str(run.id),
                "entity_type": run.entity_type,
                "entity_id": str(run.entity_id) if run.entity_id else None,
                "error": error,
                "correlation_id": run.correlation_id,
            }
        )

    def _seed_context(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        run_id: uuid.UUID | None,
        entity_ref: EntityRef,
        snapshot: dict[str, Any] | None,
    ) -> dict[str, Any]:
        entity = snapshot
        if entity is None and entity_ref.id is not None:
            entity = self.entity_store.load_snapshot(session, entity_ref.type, entity_ref.id)
        return {
            "workflow_id": str(workflow_id),
            "run_id": str(run_id) if run_id else None,
            "entity_type": entity_ref.type,
            "entity_id": str(entity_ref.id) if entity_ref.id else None,
            "entity": entity,
        }

    def _load_run(self, session: Session, run_id: uuid.UUID) -> WorkflowRun:
        run = session.get(WorkflowRun, run_id)
        if run is None:
            raise NotFoundError(f"workflow run {run_id} not found")
        return run
