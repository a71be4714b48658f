from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.automation.scheduler import EntityRef, WorkflowRunScheduler
from app.automation.service import WorkflowService
from app.core.config import get_settings


logger = logging.getLogger("app.automation.runs")

ENTITY_TYPES = ("contact", "lead", "deal", "company", "task")
ACTION_TRIGGERS = {"created": "create", "updated": "update", "deleted": "delete"}
ENTITY_EVENT_NAMES = [f"{entity_type}.{action}" for entity_type in ENTITY_TYPES for action in ACTION_TRIGGERS]


def parse_entity_event(envelope: dict[str, Any]) -> tuple[EntityRef, str, dict[str, Any] | None] | None:
    event_type = str(envelope.get("event_type") or "")
    entity_type, _, action = event_type.partition(".")
    if entity_type not in ENTITY_TYPES or action not in ACTION_TRIGGERS:
        return None

    raw_id = envelope.get("entity_id")
    try:
        entity_id = uuid.UUID(str(raw_id)) if raw_id else None
    except ValueError:
        return None
    if entity_id is None:
        return None

    snapshot = envelope.get("snapshot") if isinstance(envelope.get("snapshot"), dict) else None
    return EntityRef(type=entity_type, id=entity_id), ACTION_TRIGGERS[action], snapshot


class WorkflowTriggerService:
    def __init__(
        self,
        workflow_service: WorkflowService | None = None,
        scheduler: WorkflowRunScheduler | None = None,
    ) -> None:
        self.scheduler = scheduler or WorkflowRunScheduler()
        self.workflow_service = workflow_service or WorkflowService(scheduler=self.scheduler)

    def handle_entity_event(self, session: Session, envelope: dict[str, Any]) -> list[uuid.UUID]:
        parsed = parse_entity_event(envelope)
        if parsed is None:
            return []
        entity_ref, trigger_type, snapshot = parsed

        workflows = self.workflow_service.get_active_workflows_for_trigger(session, entity_ref.type, trigger_type)
        run_ids = [
            self.scheduler.start_run(session, workflow, trigger_type, entity_ref, snapshot=snapshot).id
            for workflow in workflows
        ]
        for run_id in run_ids:
            self.dispatch_run(session, run_id)
        return run_ids

    def dispatch_run(self, session: Session, run_id: uuid.UUID) -> None:
        if get_settings().auto_run_workflow_jobs:
            self.scheduler.advance(session, run_id)
            return

        from app.core.celery_app import workflow_advance_task

        try:
            workflow_advance_task.delay(str(run_id))
        except Exception as exc:
            logger.warning(
                "workflow_run.enqueue_failed",
                extra={"run_id": str(run_id), "error": str(exc)[:500]},
            )
            self.scheduler.advance(session, run_id)
