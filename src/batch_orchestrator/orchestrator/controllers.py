"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from batch_orchestrator.config import Settings
from batch_orchestrator.orchestrator.circuit_breaker import CircuitBreaker
from batch_orchestrator.orchestrator.circuit_store import (
    JsonFileCircuitStateStore,
    SqliteCircuitStateStore,
)
from batch_orchestrator.orchestrator.controller import OrchestratorController
from batch_orchestrator.orchestrator.dead_letter import DeadLetterRecorder
from batch_orchestrator.orchestrator.evidence import (
    EvidenceCollector,
    NullEvidenceCollector,
    SnapshotEvidenceCollector,
)
from batch_orchestrator.orchestrator.execution_tracker import ExecutionTracker
from batch_orchestrator.orchestrator.failure_classifier import ErrorClassifier
from batch_orchestrator.orchestrator.log_line import configure_logging
from batch_orchestrator.orchestrator.models import ItemStatus
from batch_orchestrator.orchestrator.pipeline import load_pipeline
from batch_orchestrator.orchestrator.repository import SqliteQueueService
from batch_orchestrator.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for adding one work item."""

    db_path: Path | None
    queue_name: str
    payload: str
    priority: int
    name: str | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    queue_name: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueInspectCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class QueueRetryCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class RunCommand:
    """CLI input for one orchestrator run."""

    db_path: Path | None
    pipeline_path: Path | None
    resume_cursor: str | None
    execution_id: str | None


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI plus the process exit code."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class ExecutionsCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class CircuitStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class CircuitResetCommand:
    db_path: Path | None
    target_id: str


@dataclass(slots=True)
class DeadLetterListCommand:
    db_path: Path | None
    limit: int


class OrchestratorCliController:
    """Coordinates queue, run, circuit and dead-letter CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload)
        with _queue_service(settings) as queue:
            item_id = queue.enqueue(
                command.queue_name,
                payload,
                priority=command.priority,
                name=command.name,
            )
        return [f"Item enqueued: item_id={item_id} queue={command.queue_name}"]

    def list_items(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _queue_service(settings) as queue:
            items = queue.list_items(
                queue_name=command.queue_name,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.item_id} queue={item.queue_name} status={item.status.value} "
                f"priority={item.priority} attempts={item.attempt_count}/{item.max_retries + 1} "
                f"name={item.name or '-'}",
            )
        return lines

    def inspect_item(self, command: QueueInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue_service(settings) as queue:
            details = queue.get_item_details(item_id=command.item_id)
        if details is None:
            return [f"Item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Item: {item.item_id}",
            f"Queue: {item.queue_name}",
            f"Name: {item.name or '-'}",
            f"Status: {item.status.value}",
            f"Attempts: {item.attempt_count}/{item.max_retries + 1}",
            f"Notes: {item.notes or '-'}",
            f"Payload: {json.dumps(item.payload, ensure_ascii=False, default=str)}",
            f"Created: {details.created_at.isoformat()}",
            f"Finished: {details.finished_at.isoformat() if details.finished_at else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_item(self, command: QueueRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue_service(settings) as queue:
            queue.retry_item(item_id=command.item_id)
        return [f"Item re-queued: {command.item_id}"]

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        configure_logging(settings.logging.level)

        controller: OrchestratorController | None = None

        def shutdown_requested() -> bool:
            return controller is not None and controller.stop_requested

        pipeline = load_pipeline(
            command.pipeline_path or settings.runner.pipeline_path,
            workdir=settings.runner.workdir,
            default_timeout_seconds=settings.runner.task_timeout_seconds,
            precondition_max_attempts=settings.runner.precondition_max_attempts,
            backoff_base_seconds=settings.runner.backoff_base_seconds,
            shutdown_requested=shutdown_requested,
            graceful_shutdown_seconds=settings.runner.graceful_shutdown_seconds,
        )
        with (
            _queue_service(settings) as queue,
            _circuit_breaker(settings) as breaker,
            _execution_tracker(settings) as tracker,
        ):
            controller = OrchestratorController(
                phases=pipeline.phases,
                queue=queue,
                tracker=tracker,
                classifier=ErrorClassifier(evidence=_evidence_collector(settings)),
                breaker=breaker,
                dead_letters=DeadLetterRecorder(
                    queue,
                    queue_name=settings.queue.error_queue,
                    policy=settings.queue.dead_letter_policy,
                ),
                host=settings.identity.host,
                agent=settings.identity.agent,
                flow_name=pipeline.flow_name or settings.identity.flow_name,
            )
            outcome = controller.run(
                resume_cursor=command.resume_cursor,
                execution_id=command.execution_id,
            )

        record = outcome.record
        lines = [
            f"Execution: {record.execution_id}",
            f"Status: {record.final_status.value}",
        ]
        for result in outcome.phase_results:
            lines.append(
                f"  phase={result.phase} processed={result.processed} "
                f"failed_attempts={result.failed_attempts} dead_letters={result.dead_letters} "
                f"completed={result.completed}",
            )
        lines.append(f"Observation: {record.observation or '-'}")
        if outcome.error_payload is not None:
            lines.append(f"Error: {json.dumps(outcome.error_payload, ensure_ascii=False)}")
        return RunResult(lines=lines, exit_code=outcome.exit_code)

    def executions(self, command: ExecutionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _execution_tracker(settings) as tracker:
            records = tracker.list_executions(limit=command.limit)

        lines = [f"Runs: {len(records)}"]
        for record in records:
            finished = record.end_time.isoformat() if record.end_time else "-"
            lines.append(
                f"  {record.execution_id} status={record.final_status.value} "
                f"flow={record.flow_name} host={record.host} "
                f"phase={record.current_phase or '-'} "
                f"started={record.start_time.isoformat()} finished={finished}",
            )
        return lines

    def circuit_status(self, command: CircuitStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _circuit_breaker(settings) as breaker:
            states = breaker.store.list_states()
            lines = [f"Circuits: {len(states)}"]
            for state in states:
                lines.append(
                    f"  {state.target_id} state={state.state.value} "
                    f"failures={state.failure_count}/{state.threshold} "
                    f"trial_in={breaker.seconds_until_trial(state.target_id):.1f}s",
                )
        return lines

    def circuit_reset(self, command: CircuitResetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _circuit_breaker(settings) as breaker:
            state = breaker.reset(command.target_id)
        return [f"Circuit reset: {state.target_id} state={state.state.value}"]

    def dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue_service(settings) as queue:
            entries = queue.list_items(
                queue_name=settings.queue.error_queue,
                limit=command.limit,
            )

        lines = [f"Dead-letter entries: {len(entries)}"]
        for entry in entries:
            payload = entry.payload if isinstance(entry.payload, dict) else {}
            lines.append(
                f"  {entry.item_id} execution={payload.get('ExecutionId', '-')} "
                f"subflow={payload.get('Subflow', '-')} action={payload.get('Action', '-')} "
                f"message={payload.get('Error Message', '-')}",
            )
        return lines


def _parse_payload(raw: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Payload must be valid JSON: {error}") from error


def _parse_status(value: str | None) -> ItemStatus | None:
    if value is None:
        return None
    return ItemStatus(value.strip().lower())


def _evidence_collector(settings: Settings) -> EvidenceCollector:
    if not settings.runner.evidence_enabled:
        return NullEvidenceCollector()
    return SnapshotEvidenceCollector(settings.runner.evidence_dir)


@contextmanager
def _queue_service(settings: Settings) -> Iterator[SqliteQueueService]:
    queue = SqliteQueueService(
        settings.db_path,
        max_retries=settings.queue.max_retries,
        queue_max_retries=settings.queue.queue_max_retries,
        lock_timeout_seconds=settings.queue.lock_timeout_seconds,
    )
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()


@contextmanager
def _execution_tracker(settings: Settings) -> Iterator[ExecutionTracker]:
    upgrade_head(settings.db_path)
    tracker = ExecutionTracker(settings.db_path)
    try:
        yield tracker
    finally:
        tracker.close()


@contextmanager
def _circuit_breaker(settings: Settings) -> Iterator[CircuitBreaker]:
    store: SqliteCircuitStateStore | JsonFileCircuitStateStore
    if settings.circuit.store == "file":
        store = JsonFileCircuitStateStore(settings.circuit.state_path)
    else:
        upgrade_head(settings.db_path)
        store = SqliteCircuitStateStore(settings.db_path)
    try:
        yield CircuitBreaker(
            store,
            threshold=settings.circuit.threshold,
            cooldown_seconds=settings.circuit.cooldown_seconds,
        )
    finally:
        store.close()
