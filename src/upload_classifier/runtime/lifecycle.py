"""Reset-first task launching with create-conflict recovery."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from upload_classifier.entities.models import EntityTaskState, TrackedTaskStatus
from upload_classifier.entities.repository import EntityRepository
from upload_classifier.errors import (
    InvariantViolation,
    TaskConflictError,
    TransientInfrastructureError,
)
from upload_classifier.runtime.models import RuntimeTaskStatus, TaskPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RUNTIME_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError, TimeoutError)


class TaskRuntime(Protocol):
    """Durable task engine as seen by the controller."""

    def create(self, task_id: str, payload: TaskPayload) -> object: ...

    def status(self, task_id: str) -> RuntimeTaskStatus: ...

    def terminate(self, task_id: str) -> object: ...


@dataclass(slots=True)
class LaunchResult:
    """What reset-and-launch had to do before the task was running."""

    generation_id: str
    conflict_status: RuntimeTaskStatus | None = None
    reconciled_task_ids: list[str] = field(default_factory=list)
    recorded: bool = True

    @property
    def recovered_conflict(self) -> bool:
        return self.conflict_status is not None


class TaskLifecycleController:
    """Guarantees at most one non-terminal task per entity generation."""

    def __init__(self, entities: EntityRepository, runtime: TaskRuntime) -> None:
        self.entities = entities
        self.runtime = runtime

    def reset_and_launch(
        self,
        key: str,
        generation_id: str,
        payload: TaskPayload,
    ) -> LaunchResult:
        """Launch ``generation_id`` after proving no other task is live for ``key``.

        Any runtime failure propagates: the caller must not acknowledge the
        inbound event, and redelivery re-enters this sequence from the start.
        """

        result = LaunchResult(generation_id=generation_id)
        result.reconciled_task_ids = self._reconcile_tracked(key, keep_task_id=generation_id)

        try:
            self._runtime_call(
                "create",
                generation_id,
                lambda: self.runtime.create(generation_id, payload),
            )
        except TaskConflictError as conflict:
            logger.info(
                "Task id %s already occupied (status=%s); reconciling with runtime",
                generation_id,
                conflict.status,
            )
            result.conflict_status = self._ensure_terminal(generation_id)
            try:
                self._runtime_call(
                    "create",
                    generation_id,
                    lambda: self.runtime.create(generation_id, payload),
                )
            except TaskConflictError as retry_conflict:
                logger.error(
                    "Invariant violation for %s: task %s still conflicts after reconciliation "
                    "(status=%s)",
                    key,
                    generation_id,
                    retry_conflict.status,
                )
                raise InvariantViolation(
                    f"Task {generation_id} for {key} conflicts after reconciliation "
                    f"(status={retry_conflict.status}).",
                ) from retry_conflict

        self.entities.track_task(key=key, task_id=generation_id)
        result.recorded = self.entities.mark_task_state(
            key=key,
            generation_id=generation_id,
            from_states=(EntityTaskState.LAUNCHING,),
            to_state=EntityTaskState.ACTIVE,
        )
        if result.recorded:
            self.entities.add_entity_event(
                key=key,
                event_type="classification_workflow_started",
                generation_id=generation_id,
                details={
                    "recovered_conflict": result.recovered_conflict,
                    "reconciled_task_ids": result.reconciled_task_ids,
                },
            )
            logger.info("Launched task %s for %s", generation_id, key)
        else:
            # Superseded between commit and launch; its completion will be dropped.
            logger.info(
                "Launched task %s for %s but generation is no longer current",
                generation_id,
                key,
            )
        return result

    def cancel_for_entity(self, key: str) -> list[str]:
        """Terminate every locally tracked task of ``key`` without launching."""

        return self._reconcile_tracked(key, keep_task_id=None)

    def _reconcile_tracked(self, key: str, *, keep_task_id: str | None) -> list[str]:
        reconciled: list[str] = []
        for tracked in self.entities.list_tracked_tasks(key=key, active_only=True):
            if tracked.task_id == keep_task_id:
                # Same generation: resolved by the create-conflict path instead.
                continue
            runtime_status = self._ensure_terminal(tracked.task_id)
            self.entities.finish_tracked_task(
                task_id=tracked.task_id,
                status=TrackedTaskStatus.CANCELED,
            )
            self.entities.add_entity_event(
                key=key,
                event_type="task_reconciled",
                generation_id=tracked.task_id,
                details={"runtime_status": runtime_status.value},
            )
            logger.debug(
                "Reconciled tracked task %s for %s (runtime status=%s)",
                tracked.task_id,
                key,
                runtime_status.value,
            )
            reconciled.append(tracked.task_id)
        return reconciled

    def _ensure_terminal(self, task_id: str) -> RuntimeTaskStatus:
        """Look up ``task_id`` (fail-closed) and terminate it unless already terminal."""

        status = self._runtime_call("status", task_id, lambda: self.runtime.status(task_id))
        if not status.is_terminal:
            self._runtime_call("terminate", task_id, lambda: self.runtime.terminate(task_id))
        return status

    def _runtime_call(self, operation: str, task_id: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except _RUNTIME_ERRORS as error:
            logger.warning("Task runtime %s failed for %s: %s", operation, task_id, error)
            raise TransientInfrastructureError(
                f"Task runtime {operation} failed for {task_id}: {error}",
            ) from error
