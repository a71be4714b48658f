from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from sqlalchemy import and_, inspect, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.automation.errors import DependencyError, NotFoundError, ValidationError
from app.records.models import Company, Contact, Deal, EmailLog, EmailTemplate, Lead, Task, User


logger = logging.getLogger("app.automation.collaborators")

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


class EmailDeliveryError(Exception):
    pass


class EmailProvider(Protocol):
    def send(self, *, to: str, subject: str, body_html: str) -> None:
        ...


class LoggingEmailProvider:
    def send(self, *, to: str, subject: str, body_html: str) -> None:
        logger.info("email.sent", extra={"status": "sent"})


def serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [serialize_value(item) for item in value]
    return value


class SqlEntityStore:
    entity_models: dict[str, type[Any]] = {
        "contact": Contact,
        "lead": Lead,
        "deal": Deal,
        "company": Company,
        "task": Task,
    }

    mutable_fields: dict[str, set[str]] = {
        "contact": {"first_name", "last_name", "email", "phone", "status", "owner_id", "company_id"},
        "lead": {"first_name", "last_name", "email", "company_name", "lead_source", "status", "score", "owner_id"},
        "deal": {"title", "value", "currency", "probability", "status", "expected_close_date", "owner_id", "contact_id"},
        "company": {"name", "industry", "email", "status", "owner_id"},
        "task": {"title", "description", "priority", "status", "due_date", "assigned_to", "owner_id"},
    }

    def load_snapshot(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> dict[str, Any] | None:
        entity = self._load(session, entity_type, entity_id)
        if entity is None:
            return None
        return self._to_snapshot(entity)

    def set_field(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        field: str,
        value: Any,
    ) -> dict[str, Any]:
        if field not in self.mutable_fields.get(entity_type, set()):
            raise ValidationError(
                f"field '{field}' is not mutable on {entity_type}",
                details={"entity_type": entity_type, "field": field},
            )
        entity = self._load(session, entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type} {entity_id} not found")

        setattr(entity, field, self._coerce(entity, field, value))
        session.add(entity)
        try:
            session.flush()
        except OperationalError as exc:
            raise DependencyError(f"record store unavailable: {exc.orig}") from exc
        return self._to_snapshot(entity)

    def contact_email(self, session: Session, entity_type: str, snapshot: dict[str, Any]) -> str | None:
        if entity_type in {"contact", "lead", "company"}:
            return snapshot.get("email") or None
        if entity_type == "deal":
            contact_id = snapshot.get("contact_id")
            if contact_id:
                contact = session.get(Contact, uuid.UUID(str(contact_id)))
                return contact.email if contact is not None else None
            return None
        if entity_type == "task":
            linked_type = snapshot.get("entity_type")
            linked_id = snapshot.get("entity_id")
            if linked_type and linked_type != "task" and linked_id:
                linked = self.load_snapshot(session, str(linked_type), uuid.UUID(str(linked_id)))
                return self.contact_email(session, str(linked_type), linked) if linked is not None else None
        return None

    def _load(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> Any:
        model = self.entity_models.get(entity_type)
        if model is None:
            raise ValidationError(f"unsupported entity_type '{entity_type}'")
        return session.scalar(select(model).where(and_(model.id == entity_id, model.deleted_at.is_(None))))

    def _to_snapshot(self, entity: Any) -> dict[str, Any]:
        mapper = inspect(entity).mapper
        return {column.key: serialize_value(getattr(entity, column.key)) for column in mapper.column_attrs}

    def _coerce(self, entity: Any, field: str, value: Any) -> Any:
        column = inspect(entity.__class__).columns[field]
        python_type = getattr(column.type, "python_type", None)
        if value is None:
            if not column.nullable:
                raise ValidationError(f"field '{field}' cannot be null")
            return None
        try:
            if python_type is uuid.UUID:
                return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
            if python_type is date:
                return value if isinstance(value, date) else date.fromisoformat(str(value))
            if python_type is Decimal:
                return Decimal(str(value))
            if python_type is int:
                if isinstance(value, bool):
                    raise ValueError("boolean is not an integer")
                return int(value)
            if python_type is bool:
                if isinstance(value, bool):
                    return value
                if str(value).lower() in {"true", "false"}:
                    return str(value).lower() == "true"
                raise ValueError("invalid boolean")
            if python_type is str:
                return str(value)
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise ValidationError(f"invalid value for field '{field}'", details={"field": field}) from exc
        return value


class SqlTaskCreator:
    def create_task(
        self,
        session: Session,
        *,
        title: str,
        description: str | None,
        priority: str,
        due_date: date | None,
        assigned_to: uuid.UUID | None,
        entity_type: str | None,
        entity_id: uuid.UUID | None,
        workflow_run_id: uuid.UUID | None,
    ) -> uuid.UUID:
        task = Task(
            title=title,
            description=description,
            priority=priority,
            due_date=due_date,
            assigned_to=assigned_to,
            entity_type=entity_type,
            entity_id=entity_id,
            workflow_run_id=workflow_run_id,
        )
        session.add(task)
        try:
            session.flush()
        except OperationalError as exc:
            raise DependencyError(f"task store unavailable: {exc.orig}") from exc
        return task.id


class SqlUserDirectory:
    def email_for(self, session: Session, user_id: uuid.UUID) -> str | None:
        user = session.scalar(select(User).where(and_(User.id == user_id, User.is_active.is_(True))))
        return user.email if user is not None else None


def render_template(text: str, variables: dict[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER_RE.sub(replace, text)


class TemplateEmailSender:
    def __init__(self, provider: EmailProvider | None = None) -> None:
        self.provider: EmailProvider = provider or LoggingEmailProvider()

    def find_template(self, session: Session, template_name: str) -> EmailTemplate:
        template = session.scalar(
            select(EmailTemplate).where(and_(EmailTemplate.name == template_name, EmailTemplate.is_active.is_(True)))
        )
        if template is None:
            raise NotFoundError(f"email template '{template_name}' not found")
        return template

    def send(
        self,
        session: Session,
        *,
        template: EmailTemplate,
        recipient_email: str,
        variables: dict[str, Any],
        workflow_run_id: uuid.UUID | None,
    ) -> EmailLog:
        email_log = EmailLog(
            template_id=template.id,
            recipient_email=recipient_email,
            subject=render_template(template.subject, variables),
            body=render_template(template.body_html, variables),
            status="queued",
            workflow_run_id=workflow_run_id,
        )
        try:
            self.provider.send(to=email_log.recipient_email, subject=email_log.subject, body_html=email_log.body)
            email_log.status = "sent"
            email_log.sent_at = datetime.now(timezone.utc)
        except EmailDeliveryError as exc:
            email_log.status = "failed"
            email_log.error_message = str(exc)[:2000]
            logger.warning("email.send_failed", extra={"status": "failed", "error": str(exc)})
        session.add(email_log)
        session.flush()
        return email_log
