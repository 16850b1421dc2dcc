"""Controllers for upload-classifier CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from upload_classifier.config import Settings
from upload_classifier.entities.models import Outcome
from upload_classifier.flows import (
    DeliveryRunResult,
    process_notifications_flow,
    redeliver_until_acked,
)
from upload_classifier.runtime.models import DurableTaskStatus
from upload_classifier.runtime.worker import WorkerRunSummary
from upload_classifier.services import open_services


@dataclass(slots=True)
class DeliverCommand:
    """CLI input for notification delivery."""

    db_path: Path | None
    payload_text: str
    direct: bool = False
    drain_worker: bool | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ListEntitiesCommand:
    db_path: Path | None
    tenant_id: str | None
    limit: int


@dataclass(slots=True)
class InspectEntityCommand:
    db_path: Path | None
    key: str


@dataclass(slots=True)
class EventsCommand:
    db_path: Path | None
    key: str | None
    limit: int


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    entity_key: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task inspection or cancellation."""

    db_path: Path | None
    task_id: str


class UploadClassifierCliController:
    """Coordinates delivery, worker and inspection CLI operations."""

    def deliver(self, command: DeliverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.drain_worker is not None:
            settings.delivery.drain_worker = command.drain_worker
        messages = _parse_messages(command.payload_text)

        if command.direct:
            with open_services(settings) as services:
                result = redeliver_until_acked(
                    messages,
                    deliver=services.adapter.handle_batch,
                    max_redeliveries=settings.delivery.max_redeliveries,
                    delay_seconds=settings.delivery.redelivery_delay_seconds,
                )
                if settings.delivery.drain_worker:
                    result.worker = services.worker.run_loop(max_tasks=None, max_idle_polls=1)
        else:
            result = process_notifications_flow(messages=messages, settings=settings)
        return _render_delivery(result)

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            summary = (
                services.worker.run_once()
                if command.once
                else services.worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [_render_worker_summary(summary)]

    def list_entities(self, command: ListEntitiesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            entities = services.entities.list_entities(
                tenant_id=command.tenant_id,
                limit=command.limit,
            )

        lines = [f"Entities: {len(entities)}"]
        for entity in entities:
            lines.append(
                f"  {entity.entity_key} state={entity.task_state.value} "
                f"marker={entity.ordering_marker} generation={entity.generation_id} "
                f"outcome={_render_outcome(entity.outcome)}",
            )
        return lines

    def inspect_entity(self, command: InspectEntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            entity = services.entities.get_entity(command.key)
            tracked = services.entities.list_tracked_tasks(key=command.key, active_only=False)
        if entity is None:
            return [f"Entity not found: {command.key}"]

        lines = [
            f"Entity: {entity.entity_key}",
            f"Tenant: {entity.tenant_id}",
            f"Ordering marker: {entity.ordering_marker}",
            f"Generation: {entity.generation_id}",
            f"Task state: {entity.task_state.value}",
            f"Object: {entity.object_key} size={entity.object_size or '-'} "
            f"etag={entity.object_etag or '-'}",
            f"Outcome: {_render_outcome(entity.outcome)}",
            f"Updated: {entity.updated_at.isoformat()}",
            f"Tracked tasks: {len(tracked)}",
        ]
        for item in tracked:
            lines.append(f"  {item.task_id} status={item.status.value}")
        return lines

    def events(self, command: EventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            events = services.entities.list_entity_events(key=command.key, limit=command.limit)

        lines = [f"Events: {len(events)}"]
        for event in events:
            details = json.dumps(event.details, ensure_ascii=False, sort_keys=True)
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {event.entity_key} "
                f"generation={event.generation_id or '-'} {details}",
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with open_services(settings) as services:
            tasks = services.runtime.list_tasks(
                status=status_filter,
                entity_key=command.entity_key,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} entity={task.entity_key} status={task.status.value} "
                f"attempt={task.attempt}/{task.max_attempts} "
                f"run_after={task.run_after.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            details = services.runtime.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Entity: {task.entity_key}",
            f"Object: {task.payload.object_key}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt}/{task.max_attempts}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.runtime.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            status = services.runtime.terminate(command.task_id, reason="operator_cancel")
            if status != DurableTaskStatus.TERMINATED or task.status == status:
                return [f"Task already finished: {command.task_id} status={task.status.value}"]
            services.guard.apply_outcome(
                task.entity_key,
                task.task_id,
                Outcome.failure("Task canceled by operator."),
            )
        return [f"Task canceled: {command.task_id}"]


def _parse_messages(payload_text: str) -> list[Any]:
    try:
        payload = json.loads(payload_text)
    except ValueError as error:
        raise ValueError(f"Delivery input is not valid JSON: {error}") from error
    if isinstance(payload, list):
        return payload
    return [payload]


def _parse_status(value: str | None) -> DurableTaskStatus | None:
    if value is None:
        return None
    try:
        return DurableTaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _render_outcome(outcome: Outcome | None) -> str:
    if outcome is None:
        return "-"
    if outcome.is_error:
        return f"error({outcome.error})"
    return f"{outcome.label}({outcome.score:.3f})"


def _render_worker_summary(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"timeouts={summary.timeouts} dropped={summary.dropped} "
        f"idle_polls={summary.idle_polls}"
    )


def _render_delivery(result: DeliveryRunResult) -> list[str]:
    lines = [
        "Delivery summary: "
        f"total={result.total} acked={result.acked} rejected={result.rejected} "
        f"unacked={result.unacked} rounds={result.rounds}",
    ]
    lines.extend(f"  unacked: {error}" for error in result.unacked_errors)
    if result.worker is not None:
        lines.append(_render_worker_summary(result.worker))
    return lines
