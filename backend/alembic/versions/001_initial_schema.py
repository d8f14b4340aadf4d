"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "deployment_attempts",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("phase", sa.String(30), nullable=False),
        sa.Column("transitions", sa.JSON, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("preceding_snapshot", sa.String(64), nullable=True),
        sa.Column("error_kind", sa.String(40), nullable=True),
        sa.Column("error", sa.JSON, nullable=True),
        sa.Column("verification", sa.JSON, nullable=True),
        sa.Column("rollback_verification", sa.JSON, nullable=True),
        sa.Column("snapshots_deleted", sa.Integer, server_default="0"),
        sa.Column("summary", sa.Text, nullable=True),
    )

    op.create_table(
        "probe_results",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("attempt_id", sa.String(40), nullable=False, index=True),
        sa.Column("probe_name", sa.String(64), nullable=False),
        sa.Column("probe_type", sa.String(30), nullable=False),
        sa.Column("passed", sa.Boolean, nullable=False),
        sa.Column("critical", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("duration_ms", sa.Float, nullable=False, server_default="0"),
        sa.Column("result", sa.JSON, nullable=False),
        sa.Column(
            "executed_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )


def downgrade() -> None:
    op.drop_table("probe_results")
    op.drop_table("deployment_attempts")
