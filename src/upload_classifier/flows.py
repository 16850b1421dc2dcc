"""Prefect flow that delivers a batch of notifications with redelivery.

Unacknowledged messages are handed back to the adapter in later rounds,
which is how a real at-least-once transport behaves. Redelivery always
re-enters the ordering gate, so a round that half-finished before failing
converges on the next one.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from prefect import flow, task
from prefect.cache_policies import NONE

from upload_classifier.config import Settings
from upload_classifier.delivery.adapter import (
    DeliveryAdapter,
    DeliveryDecision,
    NotificationMessage,
)
from upload_classifier.runtime.worker import TaskWorker, WorkerRunSummary
from upload_classifier.services import open_services

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeliveryRunResult:
    """Outcome of one batch delivery."""

    total: int
    acked: int = 0
    rejected: int = 0
    rounds: int = 0
    unacked_errors: list[str] = field(default_factory=list)
    worker: WorkerRunSummary | None = None

    @property
    def unacked(self) -> int:
        return len(self.unacked_errors)


@task(cache_policy=NONE)
def deliver_batch(
    *,
    adapter: DeliveryAdapter,
    messages: list[NotificationMessage],
) -> list[DeliveryDecision]:
    """Hand one round of messages to the adapter."""

    return adapter.handle_batch(messages)


@task(cache_policy=NONE)
def drain_worker(*, worker: TaskWorker, max_tasks: int | None = None) -> WorkerRunSummary:
    """Run queued classification tasks until the queue is idle."""

    return worker.run_loop(max_tasks=max_tasks, max_idle_polls=1)


def redeliver_until_acked(
    messages: Sequence[NotificationMessage],
    *,
    deliver: Callable[[list[NotificationMessage]], list[DeliveryDecision]],
    max_redeliveries: int,
    delay_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryRunResult:
    """Deliver ``messages``, retrying unacknowledged ones up to ``max_redeliveries`` times."""

    result = DeliveryRunResult(total=len(messages))
    pending = list(messages)
    last_errors: list[str] = []
    for round_no in range(max_redeliveries + 1):
        if not pending:
            break
        if round_no and delay_seconds > 0:
            sleep(delay_seconds)
        result.rounds += 1
        decisions = deliver(pending)
        still_pending: list[NotificationMessage] = []
        last_errors = []
        for message, decision in zip(pending, decisions, strict=True):
            if decision.ack:
                result.acked += 1
                if decision.outcome is None:
                    result.rejected += 1
                continue
            still_pending.append(message)
            last_errors.append(decision.error or "unknown error")
        if still_pending:
            logger.info(
                "Delivery round %d left %d message(s) unacknowledged",
                result.rounds,
                len(still_pending),
            )
        pending = still_pending
    result.unacked_errors = last_errors if pending else []
    return result


@flow(name="process_notifications_flow")
def process_notifications_flow(
    *,
    messages: list[NotificationMessage],
    settings: Settings,
) -> DeliveryRunResult:
    """Deliver notifications with redelivery, then optionally drain the worker."""

    with open_services(settings) as services:
        result = redeliver_until_acked(
            messages,
            deliver=lambda batch: deliver_batch(adapter=services.adapter, messages=batch),
            max_redeliveries=settings.delivery.max_redeliveries,
            delay_seconds=settings.delivery.redelivery_delay_seconds,
        )
        if result.unacked:
            logger.warning("%d message(s) remain unacknowledged", result.unacked)
        if settings.delivery.drain_worker:
            result.worker = drain_worker(worker=services.worker)
    return result
