"""Queue worker that executes classification tasks."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from upload_classifier.backend.base import Classifier
from upload_classifier.entities.guard import ResultApplicationGuard
from upload_classifier.entities.models import Applied, Outcome
from upload_classifier.errors import TransientInfrastructureError
from upload_classifier.objectstore import LocalObjectStore
from upload_classifier.runtime.failure_classifier import (
    TaskFailureClassification,
    classify_task_failure,
)
from upload_classifier.runtime.models import DurableTaskView, FailureClass
from upload_classifier.runtime.repository import TaskRuntimeRepository
from upload_classifier.storage.common import utc_now

logger = logging.getLogger(__name__)

_ERROR_SUMMARY_CHARS = 500
_STALE_EXHAUSTED_SUMMARY = "Worker heartbeat lost; attempts exhausted."
_REPORT_ERRORS = (SQLAlchemyError, TransientInfrastructureError)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    dropped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.dropped += other.dropped
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Consumes queued tasks, runs the classifier and reports through the guard."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        runtime: TaskRuntimeRepository,
        guard: ResultApplicationGuard,
        object_store: LocalObjectStore,
        classifier: Classifier,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 300,
        stale_attempt_seconds: int = 900,
    ) -> None:
        self.runtime = runtime
        self.guard = guard
        self.object_store = object_store
        self.classifier = classifier
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_attempt_seconds = stale_attempt_seconds
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._current_task_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._recover_stale_attempts(summary=summary)
        task = self._claim_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_task_id = task.task_id
        try:
            self._execute(task=task, summary=summary)
        finally:
            self._current_task_id = None
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def _claim_task(self) -> DurableTaskView | None:
        if self._stop_requested:
            return None
        return self.runtime.claim_next_ready_task(worker_id=self.worker_id)

    def _recover_stale_attempts(self, *, summary: WorkerRunSummary) -> None:
        if self.stale_attempt_seconds <= 0:
            return
        recovery = self.runtime.recover_stale_running_tasks(
            stale_after=timedelta(seconds=self.stale_attempt_seconds),
        )
        if recovery.requeued:
            logger.info("Requeued %d stale task attempts", recovery.requeued)
        for task in recovery.exhausted:
            summary.timeouts += 1
            self._finish_with_failure(
                task=task,
                failure_class=FailureClass.TIMEOUT,
                error_summary=_STALE_EXHAUSTED_SUMMARY,
                reason_code="heartbeat_lost",
                summary=summary,
            )

    def _execute(self, *, task: DurableTaskView, summary: WorkerRunSummary) -> None:
        payload = task.payload
        try:
            stored = self.object_store.fetch(payload.object_key)
            self.runtime.touch_task(task_id=task.task_id, attempt=task.attempt)
            result = self.classifier.classify(stored.content, stored.content_type)
        except Exception as error:  # noqa: BLE001
            classification = classify_task_failure(error)
            self._handle_failure(
                task=task,
                classification=classification,
                error_summary=_summarize_error(error),
                summary=summary,
            )
            return

        outcome = Outcome.success(label=result.label, score=result.score)
        if self._settle(
            task=task,
            outcome=outcome,
            summary=summary,
            finish=lambda: self.runtime.complete_task(task_id=task.task_id, attempt=task.attempt),
        ):
            summary.succeeded = 1

    def _handle_failure(
        self,
        *,
        task: DurableTaskView,
        classification: TaskFailureClassification,
        error_summary: str,
        summary: WorkerRunSummary,
    ) -> None:
        if classification.failure_class == FailureClass.TIMEOUT:
            summary.timeouts += 1

        if classification.retryable and task.attempt < task.max_attempts:
            delay_seconds = self._compute_retry_delay(retry_number=task.attempt)
            if self.runtime.schedule_retry(
                task_id=task.task_id,
                attempt=task.attempt,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                failure_class=classification.failure_class,
                error_summary=error_summary,
            ):
                summary.retried += 1
                logger.info(
                    "Task %s attempt %d failed (%s); retry in %.1fs",
                    task.task_id,
                    task.attempt,
                    classification.failure_class.value,
                    delay_seconds,
                )
            return

        self._finish_with_failure(
            task=task,
            failure_class=classification.failure_class,
            error_summary=error_summary,
            reason_code=classification.reason_code,
            summary=summary,
        )

    def _finish_with_failure(
        self,
        *,
        task: DurableTaskView,
        failure_class: FailureClass,
        error_summary: str,
        reason_code: str,
        summary: WorkerRunSummary,
    ) -> None:
        settled = self._settle(
            task=task,
            outcome=Outcome.failure(error_summary),
            summary=summary,
            finish=lambda: self.runtime.fail_task(
                task_id=task.task_id,
                attempt=task.attempt,
                failure_class=failure_class,
                error_summary=error_summary,
            ),
        )
        if settled:
            summary.failed += 1
            logger.warning("Task %s failed: %s (%s)", task.task_id, error_summary, reason_code)

    def _settle(
        self,
        *,
        task: DurableTaskView,
        outcome: Outcome,
        summary: WorkerRunSummary,
        finish: Callable[[], bool],
    ) -> bool:
        """Record ``outcome`` on the entity, then finish the runtime attempt.

        The entity row is written first so a crash after it leaves a running
        attempt that stale recovery reruns. Returns False when the attempt was
        no longer running or the outcome could not be recorded.
        """

        if not self.runtime.touch_task(task_id=task.task_id, attempt=task.attempt):
            logger.info(
                "Discarding outcome of task %s attempt %d: no longer running",
                task.task_id,
                task.attempt,
            )
            return False
        try:
            applied = self._report(task=task, outcome=outcome)
        except _REPORT_ERRORS as error:
            self._requeue_unreported(task=task, error=error, summary=summary)
            return False
        if not applied:
            summary.dropped += 1
        if not finish():
            logger.info(
                "Task %s attempt %d was finished elsewhere after its outcome was recorded",
                task.task_id,
                task.attempt,
            )
        return True

    def _requeue_unreported(
        self,
        *,
        task: DurableTaskView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        delay_seconds = self._compute_retry_delay(retry_number=task.attempt)
        logger.warning(
            "Could not record outcome of task %s attempt %d: %s; retry in %.1fs",
            task.task_id,
            task.attempt,
            error,
            delay_seconds,
        )
        if self.runtime.schedule_retry(
            task_id=task.task_id,
            attempt=task.attempt,
            run_after=utc_now() + timedelta(seconds=delay_seconds),
            failure_class=FailureClass.BACKEND_TRANSIENT,
            error_summary=f"Outcome not recorded: {_summarize_error(error)}",
        ):
            summary.retried += 1

    def _report(self, *, task: DurableTaskView, outcome: Outcome) -> bool:
        decision = self.guard.apply_outcome(task.entity_key, task.task_id, outcome)
        return isinstance(decision, Applied)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        logger.info(
            "Stop requested by %s; finishing task %s",
            signal_name,
            self._current_task_id or "-",
        )


def _summarize_error(error: BaseException) -> str:
    text = str(error).strip() or type(error).__name__
    return text[:_ERROR_SUMMARY_CHARS]
