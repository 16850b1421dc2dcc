"""Authoritative entity state store backed by SQLModel + SQLite.

Every mutation is conditioned on an explicit match: either the ordering
marker comparison or generation id equality. Nothing here overwrites a row
blindly, so reordered or concurrent writers cannot regress state.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from upload_classifier.entities.models import (
    EntityEventView,
    EntityTaskState,
    EntityView,
    ObjectReference,
    Outcome,
    TrackedTaskStatus,
    TrackedTaskView,
    split_entity_key,
)
from upload_classifier.storage.alembic_runner import upgrade_head
from upload_classifier.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from upload_classifier.storage.sqlmodel_models import EntityEvent, EntityRecord, TrackedTask

ACTIVE_TASK_STATES = frozenset({EntityTaskState.LAUNCHING, EntityTaskState.ACTIVE})


class EntityRepository:
    """Entity rows, local task bookkeeping and lifecycle event feed."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def get_entity(self, key: str) -> EntityView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(EntityRecord).where(EntityRecord.entity_key == key),
            ).one_or_none()
        return _to_entity_view(row) if row is not None else None

    def list_entities(self, *, tenant_id: str | None = None, limit: int = 50) -> list[EntityView]:
        with Session(self.engine) as session:
            statement = (
                select(EntityRecord).order_by(col(EntityRecord.updated_at).desc()).limit(limit)
            )
            if tenant_id is not None:
                statement = statement.where(EntityRecord.tenant_id == tenant_id)
            rows = session.exec(statement).all()
        return [_to_entity_view(row) for row in rows]

    def upsert_fresh(  # noqa: PLR0913
        self,
        *,
        key: str,
        ordering_marker: int,
        generation_id: str,
        reference: ObjectReference,
        correlation_token: str | None,
    ) -> bool:
        """Commit a new generation if ``ordering_marker`` advances the row.

        Returns False when the stored marker is already >= ``ordering_marker``,
        which includes losing a race against a concurrent fresher writer.
        """

        tenant_id, name = split_entity_key(key)
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                existing = session.exec(
                    select(EntityRecord.ordering_marker).where(EntityRecord.entity_key == key),
                ).one_or_none()
                if existing is None:
                    session.add(
                        EntityRecord(
                            entity_key=key,
                            tenant_id=tenant_id,
                            name=name,
                            ordering_marker=ordering_marker,
                            generation_id=generation_id,
                            task_state=EntityTaskState.LAUNCHING.value,
                            object_key=reference.key,
                            object_size=reference.size,
                            object_etag=reference.etag,
                            correlation_token=correlation_token,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                else:
                    result = session.exec(
                        sa_update(EntityRecord)
                        .where(
                            col(EntityRecord.entity_key) == key,
                            col(EntityRecord.ordering_marker) < ordering_marker,
                        )
                        .values(
                            ordering_marker=ordering_marker,
                            generation_id=generation_id,
                            task_state=EntityTaskState.LAUNCHING.value,
                            object_key=reference.key,
                            object_size=reference.size,
                            object_etag=reference.etag,
                            correlation_token=correlation_token,
                            outcome_label=None,
                            outcome_score=None,
                            outcome_error=None,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        return False
                self._add_event(
                    session=session,
                    key=key,
                    event_type="upload_accepted",
                    generation_id=generation_id,
                    details={
                        "ordering_marker": ordering_marker,
                        "object_key": reference.key,
                        "correlation_token": correlation_token,
                    },
                )
                try:
                    session.commit()
                except IntegrityError:
                    # Concurrent first insert for the same key; re-evaluate against it.
                    session.rollback()
                    continue
                return True

    def mark_task_state(
        self,
        *,
        key: str,
        generation_id: str,
        from_states: Iterable[EntityTaskState],
        to_state: EntityTaskState,
    ) -> bool:
        """Move ``task_state`` only while the row still holds ``generation_id``."""

        allowed = [state.value for state in from_states]
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(EntityRecord)
                .where(
                    col(EntityRecord.entity_key) == key,
                    col(EntityRecord.generation_id) == generation_id,
                    col(EntityRecord.task_state).in_(allowed),
                )
                .values(task_state=to_state.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def apply_outcome(self, *, key: str, generation_id: str, outcome: Outcome) -> bool:
        """Write a task outcome guarded by ``(key, generation_id)``."""

        task_state = EntityTaskState.FAILED if outcome.is_error else EntityTaskState.APPLIED
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(EntityRecord)
                .where(
                    col(EntityRecord.entity_key) == key,
                    col(EntityRecord.generation_id) == generation_id,
                )
                .values(
                    task_state=task_state.value,
                    outcome_label=outcome.label,
                    outcome_score=outcome.score,
                    outcome_error=outcome.error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(TrackedTask)
                .where(
                    col(TrackedTask.task_id) == generation_id,
                    col(TrackedTask.status) == TrackedTaskStatus.RUNNING.value,
                )
                .values(
                    status=(
                        TrackedTaskStatus.ERRORED.value
                        if outcome.is_error
                        else TrackedTaskStatus.COMPLETE.value
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.is_error:
                self._add_event(
                    session=session,
                    key=key,
                    event_type="classification_error",
                    generation_id=generation_id,
                    details={"error": outcome.error},
                )
            else:
                self._add_event(
                    session=session,
                    key=key,
                    event_type="classification_updated",
                    generation_id=generation_id,
                    details={"label": outcome.label, "score": outcome.score},
                )
            session.commit()
            return True

    def delete_entity(self, *, key: str, ordering_marker: int) -> bool:
        """Delete the row if ``ordering_marker`` is newer than the stored marker."""

        with Session(self.engine) as session:
            row = session.exec(
                select(EntityRecord).where(EntityRecord.entity_key == key),
            ).one_or_none()
            if row is None:
                return False
            result = session.exec(
                sa_delete(EntityRecord).where(
                    col(EntityRecord.entity_key) == key,
                    col(EntityRecord.ordering_marker) < ordering_marker,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                key=key,
                event_type="upload_deleted",
                generation_id=row.generation_id,
                details={"ordering_marker": ordering_marker},
            )
            session.commit()
            return True

    def track_task(self, *, key: str, task_id: str) -> None:
        """Record that a task was launched for ``key`` (idempotent per task id)."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(TrackedTask).where(TrackedTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                session.add(
                    TrackedTask(
                        task_id=task_id,
                        entity_key=key,
                        status=TrackedTaskStatus.RUNNING.value,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            else:
                row.status = TrackedTaskStatus.RUNNING.value
                row.updated_at = to_db_datetime(now)
                session.add(row)
            session.commit()

    def list_tracked_tasks(self, *, key: str, active_only: bool = True) -> list[TrackedTaskView]:
        with Session(self.engine) as session:
            statement = (
                select(TrackedTask)
                .where(TrackedTask.entity_key == key)
                .order_by(col(TrackedTask.created_at).asc(), col(TrackedTask.task_id).asc())
            )
            if active_only:
                statement = statement.where(TrackedTask.status == TrackedTaskStatus.RUNNING.value)
            rows = session.exec(statement).all()
        return [_to_tracked_view(row) for row in rows]

    def finish_tracked_task(self, *, task_id: str, status: TrackedTaskStatus) -> bool:
        """Move a tracked task out of ``running``."""

        if status == TrackedTaskStatus.RUNNING:
            raise ValueError("Tracked tasks can only be finished into a terminal status.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TrackedTask)
                .where(
                    col(TrackedTask.task_id) == task_id,
                    col(TrackedTask.status) == TrackedTaskStatus.RUNNING.value,
                )
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def add_entity_event(
        self,
        *,
        key: str,
        event_type: str,
        generation_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                key=key,
                event_type=event_type,
                generation_id=generation_id,
                details=details or {},
            )
            session.commit()

    def list_entity_events(
        self,
        *,
        key: str | None = None,
        limit: int = 100,
    ) -> list[EntityEventView]:
        with Session(self.engine) as session:
            statement = select(EntityEvent).order_by(col(EntityEvent.id).desc()).limit(limit)
            if key is not None:
                statement = statement.where(EntityEvent.entity_key == key)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in reversed(rows)]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        key: str,
        event_type: str,
        generation_id: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            EntityEvent(
                entity_key=key,
                event_type=event_type,
                generation_id=generation_id,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_entity_view(row: EntityRecord) -> EntityView:
    outcome = None
    if row.outcome_error is not None or row.outcome_label is not None:
        outcome = Outcome(
            label=row.outcome_label,
            score=row.outcome_score,
            error=row.outcome_error,
        )
    return EntityView(
        entity_key=row.entity_key,
        tenant_id=row.tenant_id,
        name=row.name,
        ordering_marker=row.ordering_marker,
        generation_id=row.generation_id,
        task_state=EntityTaskState(row.task_state),
        object_key=row.object_key,
        object_size=row.object_size,
        object_etag=row.object_etag,
        correlation_token=row.correlation_token,
        outcome=outcome,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_tracked_view(row: TrackedTask) -> TrackedTaskView:
    return TrackedTaskView(
        task_id=row.task_id,
        entity_key=row.entity_key,
        status=TrackedTaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: EntityEvent) -> EntityEventView:
    details = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return EntityEventView(
        event_id=row.id or 0,
        entity_key=row.entity_key,
        event_type=row.event_type,
        generation_id=row.generation_id,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
