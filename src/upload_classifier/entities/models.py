"""Domain models for entity state, ordering decisions and outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EntityTaskState(str, Enum):
    """Task state recorded on the entity row."""

    NONE = "none"
    LAUNCHING = "launching"
    ACTIVE = "active"
    APPLIED = "applied"
    FAILED = "failed"


class TrackedTaskStatus(str, Enum):
    """Local bookkeeping states for tasks launched on behalf of an entity."""

    RUNNING = "running"
    CANCELED = "canceled"
    COMPLETE = "complete"
    ERRORED = "errored"


@dataclass(slots=True, frozen=True)
class ObjectReference:
    """Pointer to the uploaded object the task will read."""

    key: str
    size: int | None = None
    etag: str | None = None


@dataclass(slots=True, frozen=True)
class Outcome:
    """Task result: either a label/score pair or an error detail."""

    label: str | None = None
    score: float | None = None
    error: str | None = None

    @classmethod
    def success(cls, *, label: str, score: float) -> Outcome:
        return cls(label=label, score=score)

    @classmethod
    def failure(cls, error: str) -> Outcome:
        return cls(error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(slots=True)
class EntityView:
    """Readable entity row."""

    entity_key: str
    tenant_id: str
    name: str
    ordering_marker: int
    generation_id: str
    task_state: EntityTaskState
    object_key: str
    object_size: int | None
    object_etag: str | None
    correlation_token: str | None
    outcome: Outcome | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TrackedTaskView:
    """Locally tracked task launched for an entity."""

    task_id: str
    entity_key: str
    status: TrackedTaskStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class EntityEventView:
    """Entity lifecycle notification entry."""

    event_id: int
    entity_key: str
    event_type: str
    generation_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Fresh:
    """Event advanced the marker; a new generation was committed."""

    generation_id: str
    ordering_marker: int


@dataclass(slots=True, frozen=True)
class Stale:
    """Event did not advance the marker.

    ``resume_generation_id`` is set when the event repeats the stored marker
    while the stored generation has not been confirmed as launched.
    """

    ordering_marker: int
    stored_marker: int | None
    resume_generation_id: str | None = None


@dataclass(slots=True, frozen=True)
class DeleteFresh:
    """Deletion is newer than the stored marker for an existing row."""

    generation_id: str
    ordering_marker: int
    stored_marker: int


@dataclass(slots=True, frozen=True)
class Applied:
    """Completion matched the current generation and was written."""

    generation_id: str
    task_state: EntityTaskState


@dataclass(slots=True, frozen=True)
class DroppedStale:
    """Completion referred to a superseded or deleted generation."""

    generation_id: str
    current_generation_id: str | None


def split_entity_key(entity_key: str) -> tuple[str, str]:
    """Split ``<tenant_id>/<name>`` into its parts."""

    tenant_id, separator, name = entity_key.partition("/")
    if not separator or not tenant_id or not name:
        raise ValueError(f"Entity key must look like <tenant_id>/<name>: {entity_key!r}")
    return tenant_id, name
