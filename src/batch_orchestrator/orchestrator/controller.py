"""Top-level run loop over the ordered pipeline phases."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from batch_orchestrator.orchestrator.circuit_breaker import CircuitBreaker
from batch_orchestrator.orchestrator.dead_letter import DeadLetterRecorder
from batch_orchestrator.orchestrator.errors import ConfigurationError, ResumeCursorError
from batch_orchestrator.orchestrator.execution_tracker import ExecutionMeta, ExecutionTracker
from batch_orchestrator.orchestrator.failure_classifier import ErrorClassifier, FailureSignal
from batch_orchestrator.orchestrator.log_line import RunLogAdapter
from batch_orchestrator.orchestrator.models import (
    ErrorRecord,
    FinalStatus,
    Phase,
    PhaseResult,
    RunContext,
    RunOutcome,
)
from batch_orchestrator.orchestrator.phase_runner import PhaseRunner
from batch_orchestrator.orchestrator.queue import QueueClient

logger = logging.getLogger(__name__)

Cleanup = Callable[[RunContext], None]


class OrchestratorController:
    """Run phases in order, resumable at any phase boundary.

    The phase about to run is persisted before it starts, so a crashed run resumed
    with the same execution id re-drains that phase's queue. Orchestrator-level
    failures abort the remaining phases; item failures never do.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        phases: Sequence[Phase],
        queue: QueueClient,
        tracker: ExecutionTracker,
        classifier: ErrorClassifier,
        breaker: CircuitBreaker,
        dead_letters: DeadLetterRecorder,
        host: str,
        agent: str,
        flow_name: str,
        cleanups: Sequence[Cleanup] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        names = [phase.name for phase in phases]
        if not names:
            raise ConfigurationError("Pipeline must declare at least one phase.")
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate phase name(s): {', '.join(duplicates)}")

        self.phases = list(phases)
        self.queue = queue
        self.tracker = tracker
        self.classifier = classifier
        self.dead_letters = dead_letters
        self.host = host
        self.agent = agent
        self.flow_name = flow_name
        self.cleanups = list(cleanups)
        self.runner = PhaseRunner(
            queue=queue,
            classifier=classifier,
            breaker=breaker,
            dead_letters=dead_letters,
            sleep=sleep,
            stop_requested=lambda: self._stop_requested,
        )
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "request") -> None:
        """Finish the in-flight item, then stop without dequeuing further items."""

        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.warning("Stop requested (%s); finishing current item", signal_name)

    def run(
        self,
        resume_cursor: str | None = None,
        execution_id: str | None = None,
    ) -> RunOutcome:
        start_index = self._resolve_start(resume_cursor, execution_id)
        self._stop_requested = False
        self._stop_signal_name = None

        execution_id = self.tracker.start(
            ExecutionMeta(
                host=self.host,
                agent=self.agent,
                flow_name=self.flow_name,
                execution_id=execution_id,
                resume_cursor=self.phases[start_index].name if start_index else resume_cursor,
            ),
        )
        context = RunContext(
            execution_id=execution_id,
            host=self.host,
            agent=self.agent,
            flow_name=self.flow_name,
        )
        log = RunLogAdapter(logger, context)
        if start_index:
            log.info("Resuming at phase %s", self.phases[start_index].name)
        else:
            log.info("Run started with %d phase(s)", len(self.phases))

        phase_results: list[PhaseResult] = []
        error_payload: dict[str, str] | None = None
        final_status = FinalStatus.ABORTED
        observation: str | None = "Interrupted"
        with self._signal_handlers():
            try:
                final_status, observation = self._run_phases(
                    start_index,
                    context,
                    phase_results,
                )
            except Exception as error:  # noqa: BLE001
                record = self._record_run_failure(error, context, log)
                final_status = FinalStatus.ERROR
                observation = record.message
                error_payload = record.to_payload()
            finally:
                self._finish(context, final_status, observation, log)

        stored = self.tracker.get(execution_id)
        if stored is None:
            raise RuntimeError(f"Execution {execution_id} vanished from the tracker.")
        return RunOutcome(record=stored, phase_results=phase_results, error_payload=error_payload)

    def _resolve_start(self, resume_cursor: str | None, execution_id: str | None) -> int:
        names = [phase.name for phase in self.phases]
        cursor = resume_cursor
        if cursor is None and execution_id is not None:
            previous = self.tracker.get(execution_id)
            cursor = previous.current_phase if previous is not None else None
        if cursor is None:
            return 0
        if cursor not in names:
            raise ResumeCursorError(
                f"Unknown resume cursor {cursor!r}; expected one of: {', '.join(names)}",
            )
        return names.index(cursor)

    def _run_phases(
        self,
        start_index: int,
        context: RunContext,
        phase_results: list[PhaseResult],
    ) -> tuple[FinalStatus, str]:
        for phase in self.phases[start_index:]:
            self.tracker.update_cursor(context.execution_id, phase.name)
            result = self.runner.run(phase, context)
            phase_results.append(result)
            if result.stopped:
                return (
                    FinalStatus.ABORTED,
                    f"Stopped by {self._stop_signal_name or 'request'} during phase {phase.name}",
                )
        processed = sum(result.processed for result in phase_results)
        failed = sum(result.failed_attempts for result in phase_results)
        return (
            FinalStatus.SUCCEEDED,
            f"Completed {len(phase_results)} phase(s): processed={processed} "
            f"failed_attempts={failed}",
        )

    def _record_run_failure(
        self,
        error: Exception,
        context: RunContext,
        log: RunLogAdapter,
    ) -> ErrorRecord:
        record = self.classifier.classify(
            FailureSignal.from_exception(error, location=context.location),
            context,
        )
        context.errors.append(record)
        log.error("Run aborted by %s: %s", type(error).__name__, record.message)
        try:
            self.dead_letters.record(record)
        except Exception:  # noqa: BLE001
            log.exception("Could not write run failure to the dead-letter queue")
        return record

    def _finish(
        self,
        context: RunContext,
        final_status: FinalStatus,
        observation: str | None,
        log: RunLogAdapter,
    ) -> None:
        for cleanup in self.cleanups:
            try:
                cleanup(context)
            except Exception:  # noqa: BLE001
                log.exception("Cleanup %r failed", cleanup)
        closed = self.tracker.end(context.execution_id, final_status, observation)
        if not closed:
            log.warning("Execution %s was already closed", context.execution_id)
        log.info("Run finished with status %s", final_status.value)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
