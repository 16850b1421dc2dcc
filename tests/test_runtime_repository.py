from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import age_heartbeat

from upload_classifier.errors import TaskConflictError
from upload_classifier.runtime.models import (
    DurableTaskStatus,
    FailureClass,
    RuntimeTaskStatus,
    TaskPayload,
)
from upload_classifier.runtime.repository import TaskRuntimeRepository
from upload_classifier.storage.common import utc_now

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Durable Queue"),
]


def _payload(generation_id: str = "g1") -> TaskPayload:
    return TaskPayload(
        entity_key="acme/cat",
        generation_id=generation_id,
        object_key="acme/cat",
        correlation_token="corr",
    )


def test_create_queues_task_and_rejects_live_duplicate(runtime: TaskRuntimeRepository) -> None:
    task = runtime.create("g1", _payload())

    assert task.status == DurableTaskStatus.QUEUED
    assert task.attempt == 0
    assert task.max_attempts == 3
    assert task.payload == _payload()
    assert runtime.status("g1") == RuntimeTaskStatus.WAITING

    with pytest.raises(TaskConflictError) as error:
        runtime.create("g1", _payload())
    assert error.value.task_id == "g1"
    assert error.value.status == "queued"


def test_create_reuses_slot_of_terminal_task(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload(), max_attempts=1)
    assert runtime.terminate("g1") == DurableTaskStatus.TERMINATED

    recreated = runtime.create("g1", _payload(), max_attempts=5)

    assert recreated.status == DurableTaskStatus.QUEUED
    assert recreated.max_attempts == 5
    assert recreated.finished_at is None
    details = runtime.get_task_details(task_id="g1")
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "terminated",
        "recreated",
    ]


def test_status_maps_runtime_states(runtime: TaskRuntimeRepository) -> None:
    assert runtime.status("missing") == RuntimeTaskStatus.NOT_FOUND

    runtime.create("g1", _payload())
    claimed = runtime.claim_next_ready_task(worker_id="w1")
    assert claimed is not None
    assert claimed.task_id == "g1"
    assert claimed.attempt == 1
    assert runtime.status("g1") == RuntimeTaskStatus.ACTIVE

    assert runtime.complete_task(task_id="g1", attempt=1)
    assert runtime.status("g1") == RuntimeTaskStatus.TERMINAL


def test_terminate_is_idempotent_and_tolerates_unknown_ids(
    runtime: TaskRuntimeRepository,
) -> None:
    assert runtime.terminate("missing") is None

    runtime.create("g1", _payload())
    runtime.claim_next_ready_task(worker_id="w1")
    assert runtime.terminate("g1", reason="superseded") == DurableTaskStatus.TERMINATED
    assert runtime.terminate("g1") == DurableTaskStatus.TERMINATED

    details = runtime.get_task_details(task_id="g1")
    assert details is not None
    terminated = [event for event in details.events if event.event_type == "terminated"]
    assert len(terminated) == 1
    assert terminated[0].status_from == DurableTaskStatus.RUNNING
    assert terminated[0].details == {"reason": "superseded"}


def test_finish_calls_are_fenced_on_status_and_attempt(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload())
    runtime.claim_next_ready_task(worker_id="w1")

    assert not runtime.complete_task(task_id="g1", attempt=2)
    runtime.terminate("g1")
    assert not runtime.complete_task(task_id="g1", attempt=1)
    assert not runtime.fail_task(
        task_id="g1",
        attempt=1,
        failure_class=FailureClass.TIMEOUT,
        error_summary="late",
    )

    task = runtime.get_task("g1")
    assert task is not None
    assert task.status == DurableTaskStatus.TERMINATED


def test_schedule_retry_delays_next_claim(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload())
    runtime.claim_next_ready_task(worker_id="w1")

    assert runtime.schedule_retry(
        task_id="g1",
        attempt=1,
        run_after=utc_now() + timedelta(hours=1),
        failure_class=FailureClass.BACKEND_TRANSIENT,
        error_summary="HTTP 503",
    )

    assert runtime.claim_next_ready_task(worker_id="w1") is None
    task = runtime.get_task("g1")
    assert task is not None
    assert task.status == DurableTaskStatus.QUEUED
    assert task.failure_class == FailureClass.BACKEND_TRANSIENT
    assert task.worker_id is None


def test_fail_task_records_failure_details(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload())
    runtime.claim_next_ready_task(worker_id="w1")

    assert runtime.fail_task(
        task_id="g1",
        attempt=1,
        failure_class=FailureClass.OBJECT_MISSING,
        error_summary="Object not found: acme/cat",
    )

    details = runtime.get_task_details(task_id="g1")
    assert details is not None
    assert details.task.status == DurableTaskStatus.FAILED
    assert details.task.finished_at is not None
    assert details.events[-1].event_type == "failed"
    assert details.events[-1].details["failure_class"] == "object_missing"


def test_recover_stale_running_tasks_requeues_or_reports_exhausted(
    runtime: TaskRuntimeRepository,
) -> None:
    runtime.create("g1", _payload("g1"))
    runtime.create("g2", _payload("g2"), max_attempts=1)
    runtime.claim_next_ready_task(worker_id="w1")
    runtime.claim_next_ready_task(worker_id="w1")
    age_heartbeat(runtime, "g1")
    age_heartbeat(runtime, "g2")

    recovery = runtime.recover_stale_running_tasks(stale_after=timedelta(minutes=15))

    assert recovery.requeued == 1
    assert [task.task_id for task in recovery.exhausted] == ["g2"]
    first = runtime.get_task("g1")
    second = runtime.get_task("g2")
    assert first is not None
    assert second is not None
    assert first.status == DurableTaskStatus.QUEUED
    assert first.failure_class == FailureClass.TIMEOUT
    assert second.status == DurableTaskStatus.RUNNING


def test_fresh_heartbeat_is_not_recovered(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload())
    runtime.claim_next_ready_task(worker_id="w1")
    assert runtime.touch_task(task_id="g1", attempt=1)

    recovery = runtime.recover_stale_running_tasks(stale_after=timedelta(minutes=15))

    assert recovery.requeued == 0
    assert recovery.exhausted == []
    assert not runtime.touch_task(task_id="g1", attempt=2)


def test_list_tasks_filters(runtime: TaskRuntimeRepository) -> None:
    runtime.create("g1", _payload("g1"))
    runtime.create(
        "g2",
        TaskPayload(entity_key="acme/dog", generation_id="g2", object_key="acme/dog"),
    )
    runtime.terminate("g2")

    assert {task.task_id for task in runtime.list_tasks()} == {"g1", "g2"}
    assert [task.task_id for task in runtime.list_tasks(status=DurableTaskStatus.QUEUED)] == [
        "g1",
    ]
    assert [task.task_id for task in runtime.list_tasks(entity_key="acme/dog")] == ["g2"]
    assert runtime.get_task_details(task_id="missing") is None
