"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from upload_classifier.config import DeliverySettings, Settings, WorkerSettings
from upload_classifier.entities.repository import EntityRepository
from upload_classifier.errors import TaskConflictError
from upload_classifier.runtime.models import RuntimeTaskStatus, TaskPayload
from upload_classifier.runtime.repository import TaskRuntimeRepository
from upload_classifier.storage.common import to_db_datetime, utc_now
from upload_classifier.storage.sqlmodel_models import DurableTask

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32


def put_object(root: Path, key: str, content: bytes = PNG_BYTES) -> Path:
    path = root.joinpath(*key.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def notification(
    key: str,
    event_time: object,
    *,
    action: str = "PutObject",
    etag: str = "etag-1",
) -> dict[str, object]:
    return {
        "account": "local",
        "action": action,
        "bucket": "uploads",
        "object": {"key": key, "size": len(PNG_BYTES), "eTag": etag},
        "eventTime": event_time,
    }


def age_heartbeat(runtime: TaskRuntimeRepository, task_id: str) -> None:
    """Push the heartbeat of a running task two hours into the past."""

    stale = to_db_datetime(utc_now() - timedelta(hours=2))
    with Session(runtime.engine) as session:
        session.exec(
            sa_update(DurableTask)
            .where(col(DurableTask.task_id) == task_id)
            .values(heartbeat_at=stale),
        )
        session.commit()


class FakeTaskRuntime:
    """In-memory task runtime with failure injection."""

    def __init__(self) -> None:
        self.tasks: dict[str, RuntimeTaskStatus] = {}
        self.create_calls: list[str] = []
        self.status_calls: list[str] = []
        self.terminate_calls: list[str] = []
        self.conflict_once: set[str] = set()
        self.stuck: set[str] = set()
        self.status_error: BaseException | None = None
        self.terminate_error: BaseException | None = None
        self.create_error: BaseException | None = None

    def create(self, task_id: str, payload: TaskPayload) -> None:
        self.create_calls.append(task_id)
        if self.create_error is not None:
            raise self.create_error
        if task_id in self.stuck:
            raise TaskConflictError(task_id, "running")
        if task_id in self.conflict_once:
            self.conflict_once.discard(task_id)
            raise TaskConflictError(task_id, "unknown")
        current = self.tasks.get(task_id)
        if current is not None and not current.is_terminal:
            raise TaskConflictError(task_id, current.value)
        self.tasks[task_id] = RuntimeTaskStatus.WAITING

    def status(self, task_id: str) -> RuntimeTaskStatus:
        self.status_calls.append(task_id)
        if self.status_error is not None:
            raise self.status_error
        if task_id in self.stuck:
            return RuntimeTaskStatus.ACTIVE
        return self.tasks.get(task_id, RuntimeTaskStatus.NOT_FOUND)

    def terminate(self, task_id: str) -> None:
        self.terminate_calls.append(task_id)
        if self.terminate_error is not None:
            raise self.terminate_error
        current = self.tasks.get(task_id)
        if current is not None and not current.is_terminal:
            self.tasks[task_id] = RuntimeTaskStatus.TERMINAL

    def live_tasks(self) -> list[str]:
        return [task_id for task_id, status in self.tasks.items() if not status.is_terminal]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture()
def entities(db_path: Path) -> Iterator[EntityRepository]:
    repository = EntityRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def runtime(db_path: Path, entities: EntityRepository) -> Iterator[TaskRuntimeRepository]:
    repository = TaskRuntimeRepository(db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fake_runtime() -> FakeTaskRuntime:
    return FakeTaskRuntime()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    object_root = tmp_path / "objects"
    object_root.mkdir()
    return Settings(
        db_path=tmp_path / "service.db",
        object_store_root=object_root,
        worker=WorkerSettings(
            worker_id="test-worker",
            poll_interval_seconds=0.0,
            retry_base_seconds=0,
            retry_max_seconds=0,
        ),
        delivery=DeliverySettings(
            max_redeliveries=2,
            redelivery_delay_seconds=0.0,
            drain_worker=False,
        ),
    )
