from __future__ import annotations

from collections.abc import Generator

import pytest

from app import audit
from app.context import reset_correlation_id, set_correlation_id


@pytest.fixture(autouse=True)
def clear_entries() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


def test_record_redacts_signing_secrets() -> None:
    entry = audit.record(
        actor_user_id="admin-1",
        entity_type="automation.webhook",
        entity_id="hook-1",
        action="webhook.updated",
        before={"name": "Old", "secret": "whsec_old"},
        after={"name": "New", "secret": "whsec_new"},
        correlation_id="audit-corr-1",
    )

    assert entry["before"] == {"name": "Old", "secret": audit.REDACTED}
    assert entry["after"] == {"name": "New", "secret": audit.REDACTED}
    assert entry["correlation_id"] == "audit-corr-1"
    assert audit.audit_entries == [entry]


def test_record_falls_back_to_context_correlation_id() -> None:
    token = set_correlation_id("ctx-corr-1")
    try:
        entry = audit.record("admin-1", "automation.workflow", "wf-1", "workflow.deleted", {"is_active": True}, None)
    finally:
        reset_correlation_id(token)

    assert entry["correlation_id"] == "ctx-corr-1"
    assert entry["after"] is None


def test_entries_for_filters_by_entity() -> None:
    audit.record("admin-1", "automation.workflow", "wf-1", "workflow.created", None, {"name": "A"})
    audit.record("admin-1", "automation.workflow", "wf-2", "workflow.created", None, {"name": "B"})
    audit.record("admin-1", "automation.workflow", "wf-1", "workflow.updated", {"name": "A"}, {"name": "A2"})

    actions = [entry["action"] for entry in audit.entries_for("automation.workflow", "wf-1")]
    assert actions == ["workflow.created", "workflow.updated"]
