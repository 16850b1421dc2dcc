"""SQLModel ORM tables for entity state and the durable task runtime."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class EntityRecord(SQLModel, table=True):
    __tablename__ = "entity_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_entity_records_tenant_updated", "tenant_id", "updated_at"),)

    entity_key: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    ordering_marker: int = Field(sa_column=Column(BigInteger(), nullable=False))
    generation_id: str = Field(unique=True)
    task_state: str = Field(index=True)
    object_key: str
    object_size: int | None = None
    object_etag: str | None = None
    correlation_token: str | None = None
    outcome_label: str | None = None
    outcome_score: float | None = None
    outcome_error: str | None = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TrackedTask(SQLModel, table=True):
    __tablename__ = "tracked_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tracked_tasks_entity_status", "entity_key", "status"),)

    task_id: str = Field(primary_key=True)
    entity_key: str
    status: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EntityEvent(SQLModel, table=True):
    __tablename__ = "entity_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_entity_events_entity_time", "entity_key", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    entity_key: str
    event_type: str = Field(index=True)
    generation_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DurableTask(SQLModel, table=True):
    __tablename__ = "durable_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_durable_tasks_queue", "status", "run_after"),)

    task_id: str = Field(primary_key=True)
    entity_key: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text(), nullable=False))
    status: str = Field(index=True)
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text(), nullable=True))
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DurableTaskEvent(SQLModel, table=True):
    __tablename__ = "durable_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_durable_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
