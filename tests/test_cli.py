from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from batch_orchestrator import __version__
from batch_orchestrator.main import batch_orchestrator

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Queue & Run Commands"),
]

FAILING_PAYLOAD = json.dumps({"fail": "ERP rejected", "subflow": "PostInvoice", "action": 3})


def _write_pipeline(tmp_path: Path, command: str) -> Path:
    path = tmp_path / "pipeline.json"
    path.write_text(
        json.dumps(
            {
                "flow_name": "invoices",
                "phases": [
                    {"name": "extract", "command": command, "target": "erp"},
                    {"name": "load", "command": command},
                ],
            },
        ),
        "utf-8",
    )
    return path


def _item_id(output: str) -> str:
    for token in output.split():
        if token.startswith("item_id="):
            return token.removeprefix("item_id=")
    raise AssertionError(f"No item id in output: {output!r}")


def test_version_option() -> None:
    result = CliRunner().invoke(batch_orchestrator, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_queue_enqueue_list_and_inspect(isolated_env: Path) -> None:
    runner = CliRunner()

    enqueue = runner.invoke(
        batch_orchestrator,
        [
            "queue",
            "enqueue",
            "--queue",
            "extract",
            "--payload",
            '{"invoice": 7}',
            "--name",
            "inv-7",
        ],
    )
    assert enqueue.exit_code == 0, enqueue.output
    item_id = _item_id(enqueue.output)

    listing = runner.invoke(batch_orchestrator, ["queue", "list", "--queue", "extract"])
    assert listing.exit_code == 0, listing.output
    assert "Items: 1" in listing.output
    assert "status=queued" in listing.output
    assert "name=inv-7" in listing.output

    inspect = runner.invoke(batch_orchestrator, ["queue", "inspect", item_id])
    assert inspect.exit_code == 0, inspect.output
    assert f"Item: {item_id}" in inspect.output
    assert 'Payload: {"invoice": 7}' in inspect.output
    assert "enqueued" in inspect.output

    missing = runner.invoke(batch_orchestrator, ["queue", "inspect", "nope"])
    assert "Item not found: nope" in missing.output


def test_queue_enqueue_rejects_invalid_json(isolated_env: Path) -> None:
    result = CliRunner().invoke(
        batch_orchestrator,
        ["queue", "enqueue", "--queue", "extract", "--payload", "{not json"],
    )

    assert result.exit_code == 2
    assert "Payload must be valid JSON" in result.output


def test_queue_retry_refuses_non_failed_item(isolated_env: Path) -> None:
    runner = CliRunner()
    enqueue = runner.invoke(batch_orchestrator, ["queue", "enqueue", "--queue", "extract"])
    item_id = _item_id(enqueue.output)

    result = runner.invoke(batch_orchestrator, ["queue", "retry", item_id])

    assert result.exit_code == 1
    assert "Only failed items can be retried manually" in result.output


def test_run_drains_pipeline_and_records_dead_letters(
    isolated_env: Path,
    tmp_path: Path,
    echo_task_command: str,
) -> None:
    runner = CliRunner()
    pipeline = _write_pipeline(tmp_path, echo_task_command)
    runner.invoke(
        batch_orchestrator,
        ["queue", "enqueue", "--queue", "extract", "--payload", '{"invoice": 1}'],
    )
    failing = runner.invoke(
        batch_orchestrator,
        ["queue", "enqueue", "--queue", "extract", "--payload", FAILING_PAYLOAD],
    )
    failing_id = _item_id(failing.output)
    runner.invoke(batch_orchestrator, ["queue", "enqueue", "--queue", "load"])

    run = runner.invoke(batch_orchestrator, ["run", "--pipeline", str(pipeline)])

    assert run.exit_code == 0, run.output
    assert "Status: succeeded" in run.output
    assert "phase=extract processed=1 failed_attempts=2 dead_letters=2" in run.output
    assert "phase=load processed=1 failed_attempts=0" in run.output

    failed = runner.invoke(batch_orchestrator, ["queue", "list", "--status", "failed"])
    assert failing_id in failed.output

    dead_letters = runner.invoke(batch_orchestrator, ["dead-letter", "list"])
    assert dead_letters.exit_code == 0, dead_letters.output
    assert "Dead-letter entries: 2" in dead_letters.output
    assert "subflow=PostInvoice" in dead_letters.output
    assert "ERP rejected" in dead_letters.output

    executions = runner.invoke(batch_orchestrator, ["executions"])
    assert "Runs: 1" in executions.output
    assert "status=succeeded flow=invoices host=test-host" in executions.output

    circuits = runner.invoke(batch_orchestrator, ["circuit", "status"])
    assert "erp state=closed failures=2/3" in circuits.output

    reset = runner.invoke(batch_orchestrator, ["circuit", "reset", "erp"])
    assert "Circuit reset: erp state=closed" in reset.output

    retry = runner.invoke(batch_orchestrator, ["queue", "retry", failing_id])
    assert retry.exit_code == 0, retry.output
    assert f"Item re-queued: {failing_id}" in retry.output


def test_run_rejects_unknown_resume_cursor(
    isolated_env: Path,
    tmp_path: Path,
    echo_task_command: str,
) -> None:
    pipeline = _write_pipeline(tmp_path, echo_task_command)

    result = CliRunner().invoke(
        batch_orchestrator,
        ["run", "--pipeline", str(pipeline), "--resume-cursor", "publish"],
    )

    assert result.exit_code == 1
    assert "Unknown resume cursor 'publish'" in result.output


def test_run_reports_missing_pipeline(isolated_env: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        batch_orchestrator,
        ["run", "--pipeline", str(tmp_path / "absent.json")],
    )

    assert result.exit_code == 1
    assert "Pipeline file not found" in result.output
