from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import notification, put_object

from upload_classifier import __version__
from upload_classifier.main import upload_classifier

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

TASK_LINE = re.compile(r"^  ([0-9a-f]{32}) ", re.MULTILINE)


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    object_root = tmp_path / "objects"
    object_root.mkdir()
    monkeypatch.setenv("UPLOAD_CLASSIFIER_OBJECT_STORE_ROOT", str(object_root))
    monkeypatch.setenv("UPLOAD_CLASSIFIER_REDELIVERY_DELAY_SECONDS", "0")
    monkeypatch.setenv("UPLOAD_CLASSIFIER_WORKER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("UPLOAD_CLASSIFIER_BACKEND", "signature")
    return tmp_path / "cli.db", object_root


def _deliver(runner: CliRunner, db_path: Path, input_path: Path, *extra: str) -> str:
    result = runner.invoke(
        upload_classifier,
        ["deliver", "--db-path", str(db_path), "--input", str(input_path), "--direct", *extra],
    )
    assert result.exit_code == 0, result.output
    return result.output


def test_version_option() -> None:
    result = CliRunner().invoke(upload_classifier, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_deliver_worker_and_inspection_commands(
    cli_env: tuple[Path, Path],
    tmp_path: Path,
) -> None:
    db_path, object_root = cli_env
    put_object(object_root, "acme/cat")
    input_path = tmp_path / "batch.json"
    input_path.write_text(
        json.dumps([notification("acme/cat", 1), notification("acme/ghost", 1)]),
        encoding="utf-8",
    )
    runner = CliRunner()

    delivered = _deliver(runner, db_path, input_path, "--no-drain")
    assert "Delivery summary: total=2 acked=2 rejected=1 unacked=0 rounds=1" in delivered
    assert "Worker summary" not in delivered

    worker = runner.invoke(
        upload_classifier,
        ["worker", "--db-path", str(db_path), "--loop", "--max-idle-polls", "1"],
    )
    assert worker.exit_code == 0, worker.output
    assert "processed=1 succeeded=1" in worker.output

    entities = runner.invoke(upload_classifier, ["entities", "list", "--db-path", str(db_path)])
    assert entities.exit_code == 0
    assert "Entities: 1" in entities.output
    assert "acme/cat state=applied marker=1" in entities.output
    assert "outcome=png(1.000)" in entities.output

    inspect = runner.invoke(
        upload_classifier,
        ["entities", "inspect", "--db-path", str(db_path), "--key", "acme/cat"],
    )
    assert inspect.exit_code == 0
    assert "Entity: acme/cat" in inspect.output
    assert "Task state: applied" in inspect.output
    assert "Tracked tasks: 1" in inspect.output

    missing = runner.invoke(
        upload_classifier,
        ["entities", "inspect", "--db-path", str(db_path), "--key", "acme/dog"],
    )
    assert "Entity not found: acme/dog" in missing.output

    events = runner.invoke(upload_classifier, ["events", "--db-path", str(db_path)])
    assert events.exit_code == 0
    for event_type in (
        "upload_accepted",
        "classification_workflow_started",
        "classification_updated",
        "upload_rejected",
    ):
        assert event_type in events.output

    tasks = runner.invoke(
        upload_classifier,
        ["tasks", "list", "--db-path", str(db_path), "--status", "succeeded"],
    )
    assert tasks.exit_code == 0
    assert "Tasks: 1" in tasks.output
    task_match = TASK_LINE.search(tasks.output)
    assert task_match is not None
    task_id = task_match.group(1)

    details = runner.invoke(
        upload_classifier,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert details.exit_code == 0
    assert f"Task: {task_id}" in details.output
    assert "Status: succeeded" in details.output
    assert "claimed queued -> running" in details.output

    finished = runner.invoke(
        upload_classifier,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert "Task already finished" in finished.output


def test_deliver_with_drain_runs_worker(cli_env: tuple[Path, Path], tmp_path: Path) -> None:
    db_path, object_root = cli_env
    put_object(object_root, "acme/cat")
    input_path = tmp_path / "one.json"
    input_path.write_text(json.dumps(notification("acme/cat", 1)), encoding="utf-8")

    output = _deliver(CliRunner(), db_path, input_path, "--drain")

    assert "acked=1 rejected=0" in output
    assert "Worker summary: processed=1 succeeded=1" in output


def test_cancel_queued_task_records_failure(cli_env: tuple[Path, Path], tmp_path: Path) -> None:
    db_path, object_root = cli_env
    put_object(object_root, "acme/cat")
    input_path = tmp_path / "one.json"
    input_path.write_text(json.dumps(notification("acme/cat", 1)), encoding="utf-8")
    runner = CliRunner()
    _deliver(runner, db_path, input_path, "--no-drain")

    queued = runner.invoke(
        upload_classifier,
        ["tasks", "list", "--db-path", str(db_path), "--status", "queued"],
    )
    task_match = TASK_LINE.search(queued.output)
    assert task_match is not None
    task_id = task_match.group(1)

    canceled = runner.invoke(
        upload_classifier,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert canceled.exit_code == 0
    assert f"Task canceled: {task_id}" in canceled.output

    inspect = runner.invoke(
        upload_classifier,
        ["entities", "inspect", "--db-path", str(db_path), "--key", "acme/cat"],
    )
    assert "Task state: failed" in inspect.output
    assert "Outcome: error(Task canceled by operator.)" in inspect.output

    unknown = runner.invoke(
        upload_classifier,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", "nope"],
    )
    assert "Task not found: nope" in unknown.output


def test_deliver_rejects_invalid_json_input(cli_env: tuple[Path, Path], tmp_path: Path) -> None:
    db_path, _ = cli_env
    input_path = tmp_path / "broken.json"
    input_path.write_text("{not json", encoding="utf-8")

    result = CliRunner().invoke(
        upload_classifier,
        ["deliver", "--db-path", str(db_path), "--input", str(input_path), "--direct"],
    )

    assert result.exit_code != 0
    assert "Delivery input is not valid JSON" in result.output
