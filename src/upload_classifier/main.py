"""CLI entrypoint for upload-classifier."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from upload_classifier import __version__
from upload_classifier.controllers import (
    DeliverCommand,
    EventsCommand,
    InspectEntityCommand,
    ListEntitiesCommand,
    ListTasksCommand,
    TaskIdCommand,
    UploadClassifierCliController,
    WorkerCommand,
)
from upload_classifier.runtime.models import DurableTaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = UploadClassifierCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="upload-classifier")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def upload_classifier(log_level: str) -> None:
    """Upload classification orchestrator CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@upload_classifier.command("deliver")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--input",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with one notification or a list of them. Reads stdin when omitted.",
)
@click.option(
    "--direct",
    is_flag=True,
    default=False,
    help="Deliver in-process without running the Prefect flow.",
)
@click.option(
    "--drain/--no-drain",
    "drain_worker",
    default=None,
    help="Run the worker until idle after delivery (default from environment).",
)
def deliver(
    db_path: Path | None,
    input_path: Path | None,
    direct: bool,
    drain_worker: bool | None,
) -> None:
    """Deliver object-store notifications, redelivering unacknowledged ones."""

    payload_text = (
        input_path.read_text(encoding="utf-8")
        if input_path is not None
        else click.get_text_stream("stdin").read()
    )
    _run(
        lambda: CONTROLLER.deliver(
            DeliverCommand(
                db_path=db_path,
                payload_text=payload_text,
                direct=direct,
                drain_worker=drain_worker,
            ),
        ),
    )


@upload_classifier.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the classification task worker."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@upload_classifier.group()
def entities() -> None:
    """Entity state inspection commands."""


@entities.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant", "tenant_id", default=None, help="Optional tenant filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entities to print.",
)
def entities_list(db_path: Path | None, tenant_id: str | None, limit: int) -> None:
    """List entity rows, most recently updated first."""

    _run(
        lambda: CONTROLLER.list_entities(
            ListEntitiesCommand(db_path=db_path, tenant_id=tenant_id, limit=limit),
        ),
    )


@entities.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--key", required=True, help="Entity key, <tenant_id>/<name>.")
def entities_inspect(db_path: Path | None, key: str) -> None:
    """Inspect one entity with its tracked tasks."""

    _run(lambda: CONTROLLER.inspect_entity(InspectEntityCommand(db_path=db_path, key=key)))


@upload_classifier.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--key", default=None, help="Optional entity key filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max events to print.",
)
def events(db_path: Path | None, key: str | None, limit: int) -> None:
    """Show the entity lifecycle event feed."""

    _run(lambda: CONTROLLER.events(EventsCommand(db_path=db_path, key=key, limit=limit)))


@upload_classifier.group()
def tasks() -> None:
    """Durable task commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in DurableTaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--entity", "entity_key", default=None, help="Optional entity key filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    entity_key: str | None,
    limit: int,
) -> None:
    """List durable tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                entity_key=entity_key,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _run(lambda: CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Terminate a queued or running task and record it as failed."""

    _run(lambda: CONTROLLER.cancel_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    upload_classifier()
