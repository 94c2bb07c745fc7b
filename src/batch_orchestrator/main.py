"""CLI entrypoint for batch-orchestrator."""

from pathlib import Path

import rich_click as click

from batch_orchestrator import __version__
from batch_orchestrator.orchestrator.controllers import (
    CircuitResetCommand,
    CircuitStatusCommand,
    DeadLetterListCommand,
    ExecutionsCommand,
    OrchestratorCliController,
    QueueEnqueueCommand,
    QueueInspectCommand,
    QueueListCommand,
    QueueRetryCommand,
    RunCommand,
)
from batch_orchestrator.orchestrator.errors import ConfigurationError, ResumeCursorError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

ITEM_STATUSES = ["queued", "processing", "processed", "generic_exception", "failed"]


@click.group()
@click.version_option(version=__version__, prog_name="batch-orchestrator")
def batch_orchestrator() -> None:
    """Queue-driven batch orchestrator CLI."""


@batch_orchestrator.group()
def queue() -> None:
    """Work queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", "queue_name", required=True, help="Target queue name.")
@click.option(
    "--payload",
    default="{}",
    show_default=True,
    help="Item payload as JSON text.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=0, max=1000),
    default=100,
    show_default=True,
    help="Lower number means higher priority.",
)
@click.option("--name", default=None, help="Optional human-readable item name.")
def queue_enqueue(
    db_path: Path | None,
    queue_name: str,
    payload: str,
    priority: int,
    name: str | None,
) -> None:
    """Add one work item to a queue."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                queue_name=queue_name,
                payload=payload,
                priority=priority,
                name=name,
            ),
        )
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--payload") from error
    _emit_lines(lines)


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", "queue_name", default=None, help="Optional queue filter.")
@click.option(
    "--status",
    type=click.Choice(ITEM_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def queue_list(
    db_path: Path | None,
    queue_name: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List work items."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_items(
            QueueListCommand(
                db_path=db_path,
                queue_name=queue_name,
                status=status,
                limit=limit,
            ),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("item_id")
def queue_inspect(db_path: Path | None, item_id: str) -> None:
    """Show one item with its event trail."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_item(
            QueueInspectCommand(db_path=db_path, item_id=item_id),
        ),
    )


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("item_id")
def queue_retry(db_path: Path | None, item_id: str) -> None:
    """Re-queue a failed item with a fresh retry budget."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.retry_item(
            QueueRetryCommand(db_path=db_path, item_id=item_id),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@batch_orchestrator.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--pipeline",
    "pipeline_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Pipeline JSON file (defaults to BATCH_ORCH_PIPELINE_PATH).",
)
@click.option("--resume-cursor", default=None, help="Phase name to start from.")
@click.option(
    "--execution-id",
    default=None,
    help="Continue an existing execution (resumes at its last phase).",
)
def run(
    db_path: Path | None,
    pipeline_path: Path | None,
    resume_cursor: str | None,
    execution_id: str | None,
) -> None:
    """Drain the pipeline phases in order.

    Exit code is 0 on success, 1 on error and 130 when interrupted.
    """

    try:
        result = ORCHESTRATOR_CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                pipeline_path=pipeline_path,
                resume_cursor=resume_cursor,
                execution_id=execution_id,
            ),
        )
    except (ConfigurationError, ResumeCursorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise SystemExit(result.exit_code)


@batch_orchestrator.command("executions")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def executions(db_path: Path | None, limit: int) -> None:
    """List recent runs."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.executions(ExecutionsCommand(db_path=db_path, limit=limit)),
    )


@batch_orchestrator.group()
def circuit() -> None:
    """Circuit breaker commands."""


@circuit.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def circuit_status(db_path: Path | None) -> None:
    """Show stored circuit states."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.circuit_status(CircuitStatusCommand(db_path=db_path)))


@circuit.command("reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("target_id")
def circuit_reset(db_path: Path | None, target_id: str) -> None:
    """Force a circuit closed."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.circuit_reset(
            CircuitResetCommand(db_path=db_path, target_id=target_id),
        ),
    )


@batch_orchestrator.group("dead-letter")
def dead_letter() -> None:
    """Dead-letter queue commands."""


@dead_letter.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entries to print.",
)
def dead_letter_list(db_path: Path | None, limit: int) -> None:
    """List recorded failures."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.dead_letters(DeadLetterListCommand(db_path=db_path, limit=limit)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batch_orchestrator()
