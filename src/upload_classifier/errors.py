"""Error taxonomy shared by ingestion, task lifecycle and worker code.

Staleness is never an error: stale events and stale completions are
reported through return values. Everything below either terminates a
delivery (validation) or asks for redelivery (transient).
"""

from __future__ import annotations


class UploadClassifierError(Exception):
    """Base class for all domain errors."""


class EventValidationError(UploadClassifierError):
    """Inbound event can never succeed on retry (malformed or missing object)."""


class TransientInfrastructureError(UploadClassifierError):
    """Retryable failure of an external call; the delivery must not be acknowledged."""


class InvariantViolation(TransientInfrastructureError):
    """Task runtime and local bookkeeping disagreed in a way reconciliation could not fix."""


class TaskConflictError(UploadClassifierError):
    """Task id is already occupied by a queued or running task."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(f"Task id already in use: {task_id} (status={status})")
        self.task_id = task_id
        self.status = status


class ObjectNotFoundError(UploadClassifierError):
    """Referenced object does not exist in the object store."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key
