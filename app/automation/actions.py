from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.automation.collaborators import SqlEntityStore, SqlTaskCreator, SqlUserDirectory, TemplateEmailSender
from app.automation.errors import NotFoundError, ValidationError
from app.automation.models import WorkflowAssignmentCursor
from app.automation.schemas import (
    ActionConfig,
    AssignUserAction,
    CreateTaskAction,
    SendEmailAction,
    UpdateFieldAction,
)


@dataclass(slots=True)
class ActionOutcome:
    result: str
    detail: dict[str, Any] = field(default_factory=dict)
    context_updates: dict[str, Any] = field(default_factory=dict)


class ActionRunner(Protocol):
    def execute(self, session: Session, action: ActionConfig, context: dict[str, Any]) -> ActionOutcome:
        ...


def _context_entity(context: dict[str, Any]) -> tuple[str, uuid.UUID]:
    entity_id = context.get("entity_id")
    if not entity_id:
        raise NotFoundError("run has no context entity")
    return str(context["entity_type"]), uuid.UUID(str(entity_id))


def _due_date(action: CreateTaskAction) -> date | None:
    if action.due_in_days is None:
        return None
    return date.today() + timedelta(days=action.due_in_days)


@dataclass(slots=True)
class ActionExecutor:
    entity_store: SqlEntityStore = field(default_factory=SqlEntityStore)
    task_creator: SqlTaskCreator = field(default_factory=SqlTaskCreator)
    user_directory: SqlUserDirectory = field(default_factory=SqlUserDirectory)
    email_sender: TemplateEmailSender = field(default_factory=TemplateEmailSender)

    def execute(self, session: Session, action: ActionConfig, context: dict[str, Any]) -> ActionOutcome:
        if isinstance(action, UpdateFieldAction):
            return self._update_field(session, action, context)
        if isinstance(action, CreateTaskAction):
            return self._create_task(session, action, context)
        if isinstance(action, SendEmailAction):
            return self._send_email(session, action, context)
        return self._assign_user(session, action, context)

    def _update_field(self, session: Session, action: UpdateFieldAction, context: dict[str, Any]) -> ActionOutcome:
        entity_type, entity_id = _context_entity(context)
        before = (context.get("entity") or {}).get(action.field)
        snapshot = self.entity_store.set_field(session, entity_type, entity_id, action.field, action.value)
        return ActionOutcome(
            result="executed",
            detail={"field": action.field, "before": before, "after": snapshot.get(action.field)},
            context_updates={"entity": snapshot},
        )

    def _create_task(self, session: Session, action: CreateTaskAction, context: dict[str, Any]) -> ActionOutcome:
        entity_id = context.get("entity_id")
        task_id = self.task_creator.create_task(
            session,
            title=action.title,
            description=action.description,
            priority=action.priority,
            due_date=_due_date(action),
            assigned_to=action.assigned_to,
            entity_type=context.get("entity_type") if entity_id else None,
            entity_id=uuid.UUID(str(entity_id)) if entity_id else None,
            workflow_run_id=uuid.UUID(str(context["run_id"])) if context.get("run_id") else None,
        )
        return ActionOutcome(
            result="executed",
            detail={"task_id": str(task_id), "title": action.title},
            context_updates={"task_ids": [*context.get("task_ids", []), str(task_id)]},
        )

    def _send_email(self, session: Session, action: SendEmailAction, context: dict[str, Any]) -> ActionOutcome:
        template = self.email_sender.find_template(session, action.template_name)
        recipient_email = resolve_recipient(self.entity_store, self.user_directory, session, action, context)
        email_log = self.email_sender.send(
            session,
            template=template,
            recipient_email=recipient_email,
            variables=context.get("entity") or {},
            workflow_run_id=uuid.UUID(str(context["run_id"])) if context.get("run_id") else None,
        )
        result = "sent" if email_log.status == "sent" else "sent_best_effort"
        detail: dict[str, Any] = {
            "email_log_id": str(email_log.id),
            "template_name": action.template_name,
            "recipient_email": recipient_email,
        }
        if email_log.error_message:
            detail["provider_error"] = email_log.error_message
        return ActionOutcome(
            result=result,
            detail=detail,
            context_updates={"email_log_ids": [*context.get("email_log_ids", []), str(email_log.id)]},
        )

    def _assign_user(self, session: Session, action: AssignUserAction, context: dict[str, Any]) -> ActionOutcome:
        entity_type, entity_id = _context_entity(context)
        user_id = pick_assignee(session, action, context, advance=True)
        snapshot = self.entity_store.set_field(session, entity_type, entity_id, "owner_id", user_id)
        return ActionOutcome(
            result="executed",
            detail={"strategy": action.strategy, "user_id": str(user_id)},
            context_updates={"entity": snapshot, "assigned_user_id": str(user_id)},
        )


@dataclass(slots=True)
class DryRunActionSimulator:
    entity_store: SqlEntityStore = field(default_factory=SqlEntityStore)
    user_directory: SqlUserDirectory = field(default_factory=SqlUserDirectory)
    email_sender: TemplateEmailSender = field(default_factory=TemplateEmailSender)

    def execute(self, session: Session, action: ActionConfig, context: dict[str, Any]) -> ActionOutcome:
        if isinstance(action, UpdateFieldAction):
            entity_type, _ = _context_entity(context)
            if action.field not in self.entity_store.mutable_fields.get(entity_type, set()):
                raise ValidationError(f"field '{action.field}' is not mutable on {entity_type}")
            before = (context.get("entity") or {}).get(action.field)
            return ActionOutcome(
                result="would_execute",
                detail={"would_update": {"field": action.field, "before": before, "after": action.value}},
            )
        if isinstance(action, CreateTaskAction):
            due_date = _due_date(action)
            return ActionOutcome(
                result="would_execute",
                detail={
                    "would_create": {
                        "title": action.title,
                        "priority": action.priority,
                        "due_date": due_date.isoformat() if due_date else None,
                        "entity_type": context.get("entity_type") if context.get("entity_id") else None,
                        "entity_id": context.get("entity_id"),
                    }
                },
            )
        if isinstance(action, SendEmailAction):
            self.email_sender.find_template(session, action.template_name)
            recipient_email = resolve_recipient(self.entity_store, self.user_directory, session, action, context)
            return ActionOutcome(
                result="would_execute",
                detail={"would_send": {"template_name": action.template_name, "recipient_email": recipient_email}},
            )
        _context_entity(context)
        user_id = pick_assignee(session, action, context, advance=False)
        return ActionOutcome(
            result="would_execute",
            detail={"would_assign": {"strategy": action.strategy, "user_id": str(user_id)}},
        )


def resolve_recipient(
    entity_store: SqlEntityStore,
    user_directory: SqlUserDirectory,
    session: Session,
    action: SendEmailAction,
    context: dict[str, Any],
) -> str:
    snapshot = context.get("entity") or {}
    if action.recipient == "owner":
        owner_id = snapshot.get("owner_id")
        email = user_directory.email_for(session, uuid.UUID(str(owner_id))) if owner_id else None
    else:
        email = entity_store.contact_email(session, str(context.get("entity_type")), snapshot)
    if not email:
        raise NotFoundError(f"no email address for recipient '{action.recipient}'")
    return email


def pick_assignee(session: Session, action: AssignUserAction, context: dict[str, Any], *, advance: bool) -> uuid.UUID:
    if action.strategy == "specific":
        if action.user_id is None:
            raise ValidationError("user_id is required for the specific strategy")
        return action.user_id

    if not action.user_ids:
        raise ValidationError("round_robin candidate pool is empty")

    workflow_id = uuid.UUID(str(context["workflow_id"]))
    cursor = session.get(WorkflowAssignmentCursor, workflow_id)
    last_index = cursor.last_index if cursor is not None else -1
    next_index = (last_index + 1) % len(action.user_ids)
    if advance:
        if cursor is None:
            cursor = WorkflowAssignmentCursor(workflow_id=workflow_id, last_index=next_index)
        else:
            cursor.last_index = next_index
        session.add(cursor)
        session.flush()
    return action.user_ids[next_index]
