"""Persistent durable task runtime backed by SQLModel + SQLite.

The runtime knows nothing about entity rows: creating a task here and
recording it in the entity store are two separate, non-transactional steps.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from upload_classifier.errors import TaskConflictError
from upload_classifier.runtime.models import (
    TERMINAL_TASK_STATUSES,
    DurableTaskDetails,
    DurableTaskEventView,
    DurableTaskStatus,
    DurableTaskView,
    FailureClass,
    RuntimeTaskStatus,
    StaleAttemptRecovery,
    TaskPayload,
)
from upload_classifier.storage.alembic_runner import upgrade_head
from upload_classifier.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from upload_classifier.storage.sqlmodel_models import DurableTask, DurableTaskEvent


class TaskRuntimeRepository:
    """Queue persistence facade for durable classification tasks."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        default_max_attempts: int = 3,
    ) -> None:
        self.db_path = db_path
        self.default_max_attempts = default_max_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(
        self,
        task_id: str,
        payload: TaskPayload,
        *,
        max_attempts: int | None = None,
    ) -> DurableTaskView:
        """Queue a task under ``task_id``.

        Raises TaskConflictError while a queued or running task holds the id.
        A terminal task's id slot is reused.
        """

        attempts = max_attempts or self.default_max_attempts
        payload_json = json.dumps(payload.to_dict(), ensure_ascii=False, sort_keys=True)
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(DurableTask).where(DurableTask.task_id == task_id),
                ).one_or_none()
                if row is None:
                    session.add(
                        DurableTask(
                            task_id=task_id,
                            entity_key=payload.entity_key,
                            payload_json=payload_json,
                            status=DurableTaskStatus.QUEUED.value,
                            attempt=0,
                            max_attempts=attempts,
                            run_after=now,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type="created",
                        status_from=None,
                        status_to=DurableTaskStatus.QUEUED,
                        details={"entity_key": payload.entity_key, "max_attempts": attempts},
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return self._require_task(task_id)

                previous = DurableTaskStatus(row.status)
                if previous not in TERMINAL_TASK_STATUSES:
                    raise TaskConflictError(task_id, previous.value)

                result = session.exec(
                    sa_update(DurableTask)
                    .where(
                        col(DurableTask.task_id) == task_id,
                        col(DurableTask.status) == previous.value,
                    )
                    .values(
                        entity_key=payload.entity_key,
                        payload_json=payload_json,
                        status=DurableTaskStatus.QUEUED.value,
                        attempt=0,
                        max_attempts=attempts,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        finished_at=None,
                        failure_class=None,
                        error_summary=None,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="recreated",
                    status_from=previous,
                    status_to=DurableTaskStatus.QUEUED,
                    details={"entity_key": payload.entity_key},
                )
                session.commit()
                return self._require_task(task_id)

    def status(self, task_id: str) -> RuntimeTaskStatus:
        """Coarse status lookup; a missing id is ``not_found``."""

        with Session(self.engine) as session:
            value = session.exec(
                select(DurableTask.status).where(DurableTask.task_id == task_id),
            ).one_or_none()
        if value is None:
            return RuntimeTaskStatus.NOT_FOUND
        status = DurableTaskStatus(value)
        if status == DurableTaskStatus.RUNNING:
            return RuntimeTaskStatus.ACTIVE
        if status == DurableTaskStatus.QUEUED:
            return RuntimeTaskStatus.WAITING
        return RuntimeTaskStatus.TERMINAL

    def terminate(self, task_id: str, *, reason: str = "terminated") -> DurableTaskStatus | None:
        """Terminate a queued/running task.

        Already-terminal tasks are left untouched and their status returned;
        unknown ids return None.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(DurableTask).where(DurableTask.task_id == task_id),
                ).one_or_none()
                if row is None:
                    return None
                previous = DurableTaskStatus(row.status)
                if previous in TERMINAL_TASK_STATUSES:
                    return previous

                result = session.exec(
                    sa_update(DurableTask)
                    .where(
                        col(DurableTask.task_id) == task_id,
                        col(DurableTask.status) == previous.value,
                    )
                    .values(
                        status=DurableTaskStatus.TERMINATED.value,
                        finished_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="terminated",
                    status_from=previous,
                    status_to=DurableTaskStatus.TERMINATED,
                    details={"reason": reason},
                )
                session.commit()
                return DurableTaskStatus.TERMINATED

    def get_task(self, task_id: str) -> DurableTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DurableTask).where(DurableTask.task_id == task_id),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def claim_next_ready_task(self, *, worker_id: str) -> DurableTaskView | None:
        """Atomically claim one task ready for execution."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(DurableTask)
                    .where(
                        DurableTask.status == DurableTaskStatus.QUEUED.value,
                        DurableTask.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(DurableTask.run_after).asc(),
                        col(DurableTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(DurableTask)
                    .where(
                        col(DurableTask.task_id) == candidate.task_id,
                        col(DurableTask.status) == DurableTaskStatus.QUEUED.value,
                        col(DurableTask.attempt) == candidate.attempt,
                    )
                    .values(
                        status=DurableTaskStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate.task_id,
                    event_type="claimed",
                    status_from=DurableTaskStatus.QUEUED,
                    status_to=DurableTaskStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": candidate.attempt + 1},
                )
                session.commit()
                return self._require_task(candidate.task_id)

    def touch_task(self, *, task_id: str, attempt: int) -> bool:
        """Update heartbeat for a running task attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DurableTask)
                .where(
                    col(DurableTask.task_id) == task_id,
                    col(DurableTask.status) == DurableTaskStatus.RUNNING.value,
                    col(DurableTask.attempt) == attempt,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_task(self, *, task_id: str, attempt: int) -> bool:
        """Mark a running task attempt as succeeded."""

        return self._finish_running(
            task_id=task_id,
            attempt=attempt,
            status=DurableTaskStatus.SUCCEEDED,
            failure_class=None,
            error_summary=None,
        )

    def fail_task(
        self,
        *,
        task_id: str,
        attempt: int,
        failure_class: FailureClass,
        error_summary: str,
    ) -> bool:
        """Mark a running task attempt as failed."""

        return self._finish_running(
            task_id=task_id,
            attempt=attempt,
            status=DurableTaskStatus.FAILED,
            failure_class=failure_class,
            error_summary=error_summary,
        )

    def schedule_retry(
        self,
        *,
        task_id: str,
        attempt: int,
        run_after: datetime,
        failure_class: FailureClass,
        error_summary: str,
    ) -> bool:
        """Requeue a running task attempt for automatic retry."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DurableTask)
                .where(
                    col(DurableTask.task_id) == task_id,
                    col(DurableTask.status) == DurableTaskStatus.RUNNING.value,
                    col(DurableTask.attempt) == attempt,
                )
                .values(
                    status=DurableTaskStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=DurableTaskStatus.RUNNING,
                status_to=DurableTaskStatus.QUEUED,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    "attempt": attempt,
                },
            )
            session.commit()
            return True

    def recover_stale_running_tasks(self, *, stale_after: timedelta) -> StaleAttemptRecovery:
        """Requeue running tasks without heartbeat that still have attempts left.

        Stale attempts with no attempts left are returned in ``exhausted`` and
        stay running until the caller fails them.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(DurableTask).where(
                    DurableTask.status == DurableTaskStatus.RUNNING.value,
                    DurableTask.heartbeat_at < cutoff,
                ),
            ).all()

        recovery = StaleAttemptRecovery()
        for row in stale_rows:
            if row.attempt >= row.max_attempts:
                recovery.exhausted.append(_to_task_view(row))
                continue
            if self.schedule_retry(
                task_id=row.task_id,
                attempt=row.attempt,
                run_after=now,
                failure_class=FailureClass.TIMEOUT,
                error_summary="Worker heartbeat lost; task requeued.",
            ):
                recovery.requeued += 1
        return recovery

    def list_tasks(
        self,
        *,
        status: DurableTaskStatus | None = None,
        entity_key: str | None = None,
        limit: int = 50,
    ) -> list[DurableTaskView]:
        """List recent tasks, optionally filtered by status or entity."""

        with Session(self.engine) as session:
            statement = (
                select(DurableTask).order_by(col(DurableTask.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(DurableTask.status == status.value)
            if entity_key is not None:
                statement = statement.where(DurableTask.entity_key == entity_key)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> DurableTaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(DurableTask).where(DurableTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(DurableTaskEvent)
                .where(DurableTaskEvent.task_id == task_id)
                .order_by(col(DurableTaskEvent.id).asc()),
            ).all()

        events: list[DurableTaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                DurableTaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        DurableTaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=(
                        DurableTaskStatus(row.status_to) if row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return DurableTaskDetails(task=_to_task_view(task), events=events)

    def _finish_running(
        self,
        *,
        task_id: str,
        attempt: int,
        status: DurableTaskStatus,
        failure_class: FailureClass | None,
        error_summary: str | None,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DurableTask)
                .where(
                    col(DurableTask.task_id) == task_id,
                    col(DurableTask.status) == DurableTaskStatus.RUNNING.value,
                    col(DurableTask.attempt) == attempt,
                )
                .values(
                    status=status.value,
                    failure_class=failure_class.value if failure_class is not None else None,
                    error_summary=error_summary,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            details: dict[str, object] = {"attempt": attempt}
            if failure_class is not None:
                details["failure_class"] = failure_class.value
                details["error_summary"] = error_summary
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=status.value,
                status_from=DurableTaskStatus.RUNNING,
                status_to=status,
                details=details,
            )
            session.commit()
            return True

    def _require_task(self, task_id: str) -> DurableTaskView:
        task = self.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return task

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: DurableTaskStatus | None,
        status_to: DurableTaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            DurableTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_task_view(row: DurableTask) -> DurableTaskView:
    return DurableTaskView(
        task_id=row.task_id,
        entity_key=row.entity_key,
        payload=TaskPayload.from_dict(json.loads(row.payload_json)),
        status=DurableTaskStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        heartbeat_at=(
            to_utc_aware_datetime(row.heartbeat_at) if row.heartbeat_at is not None else None
        ),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
