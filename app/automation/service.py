from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app import audit
from app.api.deps import ActorUser
from app.automation.collaborators import SqlEntityStore
from app.automation.models import Workflow, WorkflowRun, WorkflowStep, utcnow
from app.automation.scheduler import EntityRef, WorkflowRunScheduler
from app.automation.schemas import (
    ScheduleConfig,
    StepDefinition,
    WorkflowCreate,
    WorkflowExecuteRequest,
    WorkflowRead,
    WorkflowRunRead,
    WorkflowTestResult,
    WorkflowUpdate,
)


class WorkflowService:
    def __init__(self, scheduler: WorkflowRunScheduler | None = None) -> None:
        self.scheduler = scheduler or WorkflowRunScheduler()
        self.entity_store = SqlEntityStore()

    def list_workflows(
        self,
        session: Session,
        *,
        entity_type: str | None = None,
        trigger_type: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRead]:
        stmt: Select[tuple[Workflow]] = select(Workflow).where(Workflow.deleted_at.is_(None))
        if entity_type:
            stmt = stmt.where(Workflow.entity_type == entity_type)
        if trigger_type:
            stmt = stmt.where(Workflow.trigger_type == trigger_type)
        if is_active is not None:
            stmt = stmt.where(Workflow.is_active.is_(is_active))

        rows = session.scalars(stmt.order_by(Workflow.created_at.desc()).limit(limit).offset(offset)).all()
        return [self._to_read(row) for row in rows]

    def get_workflow(self, session: Session, workflow_id: uuid.UUID) -> WorkflowRead:
        return self._to_read(self._load_workflow(session, workflow_id))

    def get_active_workflows_for_trigger(
        self,
        session: Session,
        entity_type: str,
        trigger_type: str,
    ) -> list[Workflow]:
        stmt = select(Workflow).where(
            and_(
                Workflow.deleted_at.is_(None),
                Workflow.is_active.is_(True),
                Workflow.entity_type == entity_type,
                Workflow.trigger_type == trigger_type,
            )
        )
        return list(session.scalars(stmt.order_by(Workflow.created_at.asc())).all())

    def create_workflow(self, session: Session, dto: WorkflowCreate, actor_user: ActorUser) -> WorkflowRead:
        workflow = Workflow(
            name=dto.name.strip(),
            description=dto.description,
            entity_type=dto.entity_type,
            trigger_type=dto.trigger_type,
            trigger_config=dto.trigger_config,
            is_active=dto.is_active,
            created_by=actor_user.user_id,
            steps=self._build_steps(dto.steps),
        )
        session.add(workflow)
        session.flush()

        after = self._to_read(workflow).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="workflow.created",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(workflow)

    def update_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
        actor_user: ActorUser,
    ) -> WorkflowRead:
        workflow = self._load_workflow(session, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        for key in ["name", "description", "entity_type", "trigger_type", "trigger_config", "is_active"]:
            if key in payload:
                setattr(workflow, key, payload[key])
        if workflow.trigger_type == "time_based" and "trigger_config" in payload and dto.trigger_type is None:
            try:
                workflow.trigger_config = ScheduleConfig.model_validate(workflow.trigger_config or {}).model_dump()
            except PydanticValidationError as exc:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"invalid trigger_config: {exc.error_count()} errors",
                ) from exc

        if dto.steps is not None:
            # (workflow_id, position) is unique: flush the deletes first
            workflow.steps.clear()
            session.flush()
            workflow.steps.extend(self._build_steps(dto.steps))

        workflow.updated_at = utcnow()
        session.add(workflow)
        session.flush()

        after = self._to_read(workflow).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="workflow.updated",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(workflow)

    def soft_delete_workflow(self, session: Session, workflow_id: uuid.UUID, actor_user: ActorUser) -> None:
        workflow = self._load_workflow(session, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")

        workflow.deleted_at = utcnow()
        workflow.is_active = False
        workflow.updated_at = utcnow()
        session.add(workflow)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="workflow.deleted",
            before=before,
            after={"deleted_at": workflow.deleted_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def execute_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        dto: WorkflowExecuteRequest,
        actor_user: ActorUser,
    ) -> WorkflowRunRead:
        workflow = self._load_workflow(session, workflow_id)
        if not workflow.is_active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="workflow is inactive")
        self._ensure_entity(session, workflow, dto)

        run = self.scheduler.start_run(
            session,
            workflow,
            "manual",
            EntityRef(type=workflow.entity_type, id=dto.entity_id),
            snapshot=dto.snapshot,
        )
        run = self.scheduler.advance(session, run.id)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="workflow.executed",
            before=None,
            after={"run_id": str(run.id), "status": run.status},
            correlation_id=actor_user.correlation_id,
        )
        return WorkflowRunRead.model_validate(run)

    def test_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        dto: WorkflowExecuteRequest,
    ) -> WorkflowTestResult:
        workflow = self._load_workflow(session, workflow_id)
        self._ensure_entity(session, workflow, dto)
        return self.scheduler.dry_run(
            session,
            workflow,
            EntityRef(type=workflow.entity_type, id=dto.entity_id),
            snapshot=dto.snapshot,
        )

    def list_runs(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowRunRead]:
        self._load_workflow(session, workflow_id, include_deleted=True)
        rows = session.scalars(
            select(WorkflowRun)
            .where(WorkflowRun.workflow_id == workflow_id)
            .order_by(WorkflowRun.started_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [WorkflowRunRead.model_validate(row) for row in rows]

    def get_run(self, session: Session, run_id: uuid.UUID) -> WorkflowRunRead:
        run = session.get(WorkflowRun, run_id)
        if run is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow run not found")
        return WorkflowRunRead.model_validate(run)

    def _ensure_entity(self, session: Session, workflow: Workflow, dto: WorkflowExecuteRequest) -> None:
        if dto.entity_id is None:
            return
        if self.entity_store.load_snapshot(session, workflow.entity_type, dto.entity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{workflow.entity_type} not found")

    def _build_steps(self, steps: list[StepDefinition]) -> list[WorkflowStep]:
        return [
            WorkflowStep(
                position=step.position if step.position is not None else index,
                step_type=step.step_type,
                config=step.config.model_dump(mode="json"),
            )
            for index, step in enumerate(steps)
        ]

    def _load_workflow(self, session: Session, workflow_id: uuid.UUID, *, include_deleted: bool = False) -> Workflow:
        workflow = session.get(Workflow, workflow_id)
        if workflow is None or (workflow.deleted_at is not None and not include_deleted):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        return workflow

    def _to_read(self, workflow: Workflow) -> WorkflowRead:
        return WorkflowRead.model_validate(workflow)
