"""Durable task runtime queue and its audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "durable_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_durable_tasks_entity_key", "durable_tasks", ["entity_key"])
    op.create_index("ix_durable_tasks_status", "durable_tasks", ["status"])
    op.create_index("idx_durable_tasks_queue", "durable_tasks", ["status", "run_after"])

    op.create_table(
        "durable_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_durable_task_events_task_id", "durable_task_events", ["task_id"])
    op.create_index(
        "idx_durable_task_events_task_time",
        "durable_task_events",
        ["task_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_durable_task_events_task_time", table_name="durable_task_events")
    op.drop_index("ix_durable_task_events_task_id", table_name="durable_task_events")
    op.drop_table("durable_task_events")
    op.drop_index("idx_durable_tasks_queue", table_name="durable_tasks")
    op.drop_index("ix_durable_tasks_status", table_name="durable_tasks")
    op.drop_index("ix_durable_tasks_entity_key", table_name="durable_tasks")
    op.drop_table("durable_tasks")
