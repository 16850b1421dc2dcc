"""Entity state store: entity records, tracked tasks and entity events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "entity_records",
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("ordering_marker", sa.BigInteger(), nullable=False),
        sa.Column("generation_id", sa.String(), nullable=False),
        sa.Column("task_state", sa.String(), nullable=False),
        sa.Column("object_key", sa.String(), nullable=False),
        sa.Column("object_size", sa.Integer(), nullable=True),
        sa.Column("object_etag", sa.String(), nullable=True),
        sa.Column("correlation_token", sa.String(), nullable=True),
        sa.Column("outcome_label", sa.String(), nullable=True),
        sa.Column("outcome_score", sa.Float(), nullable=True),
        sa.Column("outcome_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entity_key"),
        sa.UniqueConstraint("generation_id", name="uq_entity_records_generation_id"),
    )
    op.create_index("ix_entity_records_tenant_id", "entity_records", ["tenant_id"])
    op.create_index("ix_entity_records_task_state", "entity_records", ["task_state"])
    op.create_index(
        "idx_entity_records_tenant_updated",
        "entity_records",
        ["tenant_id", "updated_at"],
    )

    op.create_table(
        "tracked_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_tracked_tasks_entity_status",
        "tracked_tasks",
        ["entity_key", "status"],
    )

    op.create_table(
        "entity_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("generation_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_entity_events_event_type", "entity_events", ["event_type"])
    op.create_index(
        "idx_entity_events_entity_time",
        "entity_events",
        ["entity_key", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_entity_events_entity_time", table_name="entity_events")
    op.drop_index("ix_entity_events_event_type", table_name="entity_events")
    op.drop_table("entity_events")
    op.drop_index("idx_tracked_tasks_entity_status", table_name="tracked_tasks")
    op.drop_table("tracked_tasks")
    op.drop_index("idx_entity_records_tenant_updated", table_name="entity_records")
    op.drop_index("ix_entity_records_task_state", table_name="entity_records")
    op.drop_index("ix_entity_records_tenant_id", table_name="entity_records")
    op.drop_table("entity_records")
