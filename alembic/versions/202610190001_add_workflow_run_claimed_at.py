"""add workflow run claimed_at

Revision ID: 202610190001
Revises: 202610180003
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = "202610180003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("automation_workflow_run", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.execute("UPDATE automation_workflow_run SET claimed_at = updated_at WHERE status = 'running'")
    op.create_index(
        "ix_automation_workflow_run_status_claimed",
        "automation_workflow_run",
        ["status", "claimed_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_workflow_run_status_claimed", table_name="automation_workflow_run")
    op.drop_column("automation_workflow_run", "claimed_at")
