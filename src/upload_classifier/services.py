"""Wiring of repositories, lifecycle components, delivery adapter and worker."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from upload_classifier.backend import Classifier, HttpClassifier, SignatureClassifier
from upload_classifier.config import ClassifierSettings, Settings
from upload_classifier.delivery.adapter import DeliveryAdapter, UploadEventProcessor
from upload_classifier.entities.guard import ResultApplicationGuard
from upload_classifier.entities.locks import KeyedLocks
from upload_classifier.entities.repository import EntityRepository
from upload_classifier.objectstore import LocalObjectStore
from upload_classifier.runtime.lifecycle import TaskLifecycleController
from upload_classifier.runtime.repository import TaskRuntimeRepository
from upload_classifier.runtime.worker import TaskWorker


@dataclass(slots=True)
class UploadClassifierServices:
    """Everything one process needs, sharing a single set of per-key locks."""

    entities: EntityRepository
    runtime: TaskRuntimeRepository
    locks: KeyedLocks
    guard: ResultApplicationGuard
    controller: TaskLifecycleController
    adapter: DeliveryAdapter
    worker: TaskWorker


def build_classifier(settings: ClassifierSettings) -> Classifier:
    if settings.backend == "http":
        if not settings.endpoint_url:
            raise ValueError("UPLOAD_CLASSIFIER_ENDPOINT_URL is required for the http backend.")
        return HttpClassifier(
            endpoint_url=settings.endpoint_url,
            api_token=settings.api_token,
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )
    return SignatureClassifier()


@contextmanager
def open_services(
    settings: Settings,
    *,
    classifier: Classifier | None = None,
) -> Iterator[UploadClassifierServices]:
    """Build the service graph on ``settings.db_path`` and close it on exit."""

    settings.validate()
    entities = EntityRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    runtime = TaskRuntimeRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=int(settings.runtime.call_timeout_seconds * 1000),
        default_max_attempts=settings.runtime.max_attempts,
    )
    owned_classifier = classifier is None
    active_classifier = classifier or build_classifier(settings.classifier)
    try:
        entities.init_schema()
        object_store = LocalObjectStore(settings.object_store_root)
        locks = KeyedLocks()
        guard = ResultApplicationGuard(entities, locks=locks)
        controller = TaskLifecycleController(entities, runtime)
        yield UploadClassifierServices(
            entities=entities,
            runtime=runtime,
            locks=locks,
            guard=guard,
            controller=controller,
            adapter=DeliveryAdapter(
                UploadEventProcessor(
                    entities=entities,
                    controller=controller,
                    object_store=object_store,
                    locks=locks,
                ),
            ),
            worker=TaskWorker(
                runtime=runtime,
                guard=guard,
                object_store=object_store,
                classifier=active_classifier,
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                retry_base_seconds=settings.worker.retry_base_seconds,
                retry_max_seconds=settings.worker.retry_max_seconds,
                stale_attempt_seconds=settings.worker.stale_attempt_seconds,
            ),
        )
    finally:
        if owned_classifier and isinstance(active_classifier, HttpClassifier):
            active_classifier.close()
        runtime.close()
        entities.close()
