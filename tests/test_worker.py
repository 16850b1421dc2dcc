from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest
from conftest import age_heartbeat, notification, put_object
from sqlalchemy.exc import OperationalError

from upload_classifier.backend import ClassificationResult, ClassifierError
from upload_classifier.config import Settings
from upload_classifier.entities.gate import OrderingGate
from upload_classifier.entities.models import EntityTaskState
from upload_classifier.runtime.models import DurableTaskStatus, FailureClass
from upload_classifier.services import UploadClassifierServices, open_services

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Worker"),
]

KEY = "acme/cat"


class ScriptedClassifier:
    """Runs a queue of callables, one per classify call."""

    def __init__(self, steps: list[Callable[[], ClassificationResult]]) -> None:
        self.steps = steps
        self.calls = 0

    def classify(self, content: bytes, content_type: str) -> ClassificationResult:
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        return step()


def _result(label: str = "png") -> Callable[[], ClassificationResult]:
    return lambda: ClassificationResult(label=label, score=0.9)


def _raise(error: BaseException) -> Callable[[], ClassificationResult]:
    def _step() -> ClassificationResult:
        raise error

    return _step


@pytest.fixture()
def open_with(settings: Settings) -> Iterator[Callable[..., UploadClassifierServices]]:
    put_object(settings.object_store_root, KEY)
    stack: list = []

    def _open(classifier: object | None = None) -> UploadClassifierServices:
        manager = open_services(settings, classifier=classifier)  # type: ignore[arg-type]
        stack.append(manager)
        return manager.__enter__()

    try:
        yield _open
    finally:
        for manager in reversed(stack):
            manager.__exit__(None, None, None)


def test_successful_task_applies_outcome(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    services = open_with()
    services.adapter.handle(notification(KEY, 1))

    summary = services.worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.APPLIED
    assert entity.outcome is not None
    assert entity.outcome.label == "png"
    assert entity.outcome.score == 1.0
    task = services.runtime.get_task(entity.generation_id)
    assert task is not None
    assert task.status == DurableTaskStatus.SUCCEEDED
    assert services.worker.run_once().idle_polls == 1


def test_object_removed_after_acceptance_fails_task(
    open_with: Callable[..., UploadClassifierServices],
    settings: Settings,
) -> None:
    services = open_with()
    services.adapter.handle(notification(KEY, 1))
    Path(settings.object_store_root, "acme", "cat").unlink()

    summary = services.worker.run_once()

    assert summary.failed == 1
    assert summary.retried == 0
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.FAILED
    assert entity.outcome is not None
    assert entity.outcome.error == "Object not found: acme/cat"
    task = services.runtime.get_task(entity.generation_id)
    assert task is not None
    assert task.failure_class == FailureClass.OBJECT_MISSING


def test_retryable_failure_is_retried_then_applied(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    classifier = ScriptedClassifier(
        [_raise(ClassifierError("HTTP 503: busy", status_code=503)), _result("gif")],
    )
    services = open_with(classifier)
    services.adapter.handle(notification(KEY, 1))

    first = services.worker.run_once()
    second = services.worker.run_once()

    assert first.retried == 1
    assert second.succeeded == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.outcome is not None
    assert entity.outcome.label == "gif"
    task = services.runtime.get_task(entity.generation_id)
    assert task is not None
    assert task.attempt == 2


def test_timeouts_exhaust_attempts_and_record_failure(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    classifier = ScriptedClassifier([_raise(TimeoutError("inference timed out"))])
    services = open_with(classifier)
    services.adapter.handle(notification(KEY, 1))

    summary = services.worker.run_loop(max_idle_polls=1)

    assert classifier.calls == 3
    assert summary.processed == 3
    assert summary.timeouts == 3
    assert summary.retried == 2
    assert summary.failed == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.FAILED
    assert entity.outcome is not None
    assert entity.outcome.error == "inference timed out"


def test_non_retryable_backend_error_fails_immediately(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    classifier = ScriptedClassifier(
        [_raise(ClassifierError("HTTP 400: bad image", status_code=400))],
    )
    services = open_with(classifier)
    services.adapter.handle(notification(KEY, 1))

    summary = services.worker.run_once()

    assert summary.failed == 1
    assert classifier.calls == 1


def test_result_of_terminated_task_is_discarded(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    services: UploadClassifierServices

    def _reupload_during_inference() -> ClassificationResult:
        services.adapter.handle(notification(KEY, 2))
        return ClassificationResult(label="stale", score=1.0)

    services = open_with(ScriptedClassifier([_reupload_during_inference, _result("png")]))
    services.adapter.handle(notification(KEY, 1))

    first = services.worker.run_once()

    assert first.processed == 1
    assert first.succeeded == 0
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.outcome is None
    assert entity.task_state == EntityTaskState.ACTIVE

    second = services.worker.run_once()

    assert second.succeeded == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.outcome is not None
    assert entity.outcome.label == "png"


def test_completion_for_superseded_generation_is_dropped(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    services: UploadClassifierServices

    def _supersede_during_inference() -> ClassificationResult:
        OrderingGate(services.entities).accept(KEY, 2)
        return ClassificationResult(label="stale", score=1.0)

    services = open_with(ScriptedClassifier([_supersede_during_inference]))
    services.adapter.handle(notification(KEY, 1))

    summary = services.worker.run_once()

    assert summary.succeeded == 1
    assert summary.dropped == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.outcome is None
    assert entity.task_state == EntityTaskState.LAUNCHING
    assert services.entities.list_entity_events(key=KEY)[-1].event_type == "completion_dropped"


def test_retry_delay_is_bounded(open_with: Callable[..., UploadClassifierServices]) -> None:
    worker = open_with().worker
    worker.retry_base_seconds = 5
    worker.retry_max_seconds = 30

    first = [worker._compute_retry_delay(retry_number=1) for _ in range(50)]
    late = [worker._compute_retry_delay(retry_number=10) for _ in range(50)]

    assert all(0 <= delay <= 5 for delay in first)
    assert all(0 <= delay <= 30 for delay in late)


def test_run_loop_respects_max_tasks(open_with: Callable[..., UploadClassifierServices]) -> None:
    services = open_with()
    put_object(services.worker.object_store.root, "acme/dog")
    services.adapter.handle(notification(KEY, 1))
    services.adapter.handle(notification("acme/dog", 1))

    summary = services.worker.run_loop(max_tasks=1)

    assert summary.processed == 1
    assert len(services.runtime.list_tasks(status=DurableTaskStatus.QUEUED)) == 1


def test_stale_attempt_without_attempts_left_records_failure(
    open_with: Callable[..., UploadClassifierServices],
    settings: Settings,
) -> None:
    settings.runtime.max_attempts = 1
    services = open_with()
    services.adapter.handle(notification(KEY, 1))
    crashed = services.runtime.claim_next_ready_task(worker_id="crashed-worker")
    assert crashed is not None
    age_heartbeat(services.runtime, crashed.task_id)

    summary = services.worker.run_once()

    assert summary.processed == 0
    assert summary.timeouts == 1
    assert summary.failed == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.FAILED
    assert entity.outcome is not None
    assert entity.outcome.error == "Worker heartbeat lost; attempts exhausted."
    task = services.runtime.get_task(crashed.task_id)
    assert task is not None
    assert task.status == DurableTaskStatus.FAILED
    assert task.failure_class == FailureClass.TIMEOUT


def test_stale_attempt_with_attempts_left_is_rerun(
    open_with: Callable[..., UploadClassifierServices],
) -> None:
    services = open_with()
    services.adapter.handle(notification(KEY, 1))
    crashed = services.runtime.claim_next_ready_task(worker_id="crashed-worker")
    assert crashed is not None
    age_heartbeat(services.runtime, crashed.task_id)

    summary = services.worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.APPLIED
    task = services.runtime.get_task(crashed.task_id)
    assert task is not None
    assert task.attempt == 2
    assert task.worker_id == "test-worker"


def test_outcome_write_failure_requeues_task_until_recorded(
    open_with: Callable[..., UploadClassifierServices],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services = open_with()
    services.adapter.handle(notification(KEY, 1))
    apply_outcome = services.entities.apply_outcome
    calls: list[str] = []

    def _locked_once(**kwargs: object) -> bool:
        calls.append(str(kwargs["generation_id"]))
        if len(calls) == 1:
            raise OperationalError("UPDATE entity_records", {}, Exception("database is locked"))
        return apply_outcome(**kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(services.entities, "apply_outcome", _locked_once)

    first = services.worker.run_once()

    assert first.processed == 1
    assert first.succeeded == 0
    assert first.retried == 1
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.ACTIVE
    assert entity.outcome is None
    task = services.runtime.get_task(entity.generation_id)
    assert task is not None
    assert task.status == DurableTaskStatus.QUEUED
    assert task.failure_class == FailureClass.BACKEND_TRANSIENT

    second = services.worker.run_once()

    assert second.succeeded == 1
    assert calls == [entity.generation_id, entity.generation_id]
    entity = services.entities.get_entity(KEY)
    assert entity is not None
    assert entity.task_state == EntityTaskState.APPLIED
    task = services.runtime.get_task(entity.generation_id)
    assert task is not None
    assert task.status == DurableTaskStatus.SUCCEEDED


def test_failure_outcome_is_recorded_before_task_is_failed(
    open_with: Callable[..., UploadClassifierServices],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    classifier = ScriptedClassifier(
        [_raise(ClassifierError("HTTP 400: bad image", status_code=400))],
    )
    services = open_with(classifier)
    services.adapter.handle(notification(KEY, 1))
    fail_task = services.runtime.fail_task
    seen: list[EntityTaskState] = []

    def _observe_then_fail(**kwargs: object) -> bool:
        entity = services.entities.get_entity(KEY)
        assert entity is not None
        seen.append(entity.task_state)
        return fail_task(**kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(services.runtime, "fail_task", _observe_then_fail)

    summary = services.worker.run_once()

    assert summary.failed == 1
    assert seen == [EntityTaskState.FAILED]
