"""Domain models for the durable task runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DurableTaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINATED = "terminated"


TERMINAL_TASK_STATUSES = frozenset(
    {DurableTaskStatus.SUCCEEDED, DurableTaskStatus.FAILED, DurableTaskStatus.TERMINATED},
)


class RuntimeTaskStatus(str, Enum):
    """Coarse status exposed to the lifecycle controller."""

    ACTIVE = "active"
    WAITING = "waiting"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in {RuntimeTaskStatus.TERMINAL, RuntimeTaskStatus.NOT_FOUND}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    OBJECT_MISSING = "object_missing"
    OUTPUT_INVALID = "output_invalid"
    INPUT_CONTRACT_ERROR = "input_contract_error"


@dataclass(slots=True, frozen=True)
class TaskPayload:
    """Input a classification task needs to run."""

    entity_key: str
    generation_id: str
    object_key: str
    correlation_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_key": self.entity_key,
            "generation_id": self.generation_id,
            "object_key": self.object_key,
            "correlation_token": self.correlation_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskPayload:
        try:
            entity_key = data["entity_key"]
            generation_id = data["generation_id"]
            object_key = data["object_key"]
        except KeyError as error:
            raise ValueError(f"Task payload is missing field: {error.args[0]}") from error
        if not all(isinstance(value, str) for value in (entity_key, generation_id, object_key)):
            raise ValueError("Task payload fields must be strings.")
        token = data.get("correlation_token")
        return cls(
            entity_key=entity_key,
            generation_id=generation_id,
            object_key=object_key,
            correlation_token=token if isinstance(token, str) else None,
        )


@dataclass(slots=True)
class DurableTaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    entity_key: str
    payload: TaskPayload
    status: DurableTaskStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    error_summary: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class DurableTaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: DurableTaskStatus | None
    status_to: DurableTaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DurableTaskDetails:
    """Task details with event stream."""

    task: DurableTaskView
    events: list[DurableTaskEventView]


@dataclass(slots=True)
class StaleAttemptRecovery:
    """Result of one stale-attempt sweep.

    Exhausted attempts are left running: the caller records their failure on
    the entity first and only then fails the task.
    """

    requeued: int = 0
    exhausted: list[DurableTaskView] = field(default_factory=list)
