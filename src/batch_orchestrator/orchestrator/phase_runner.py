"""Drain one phase queue item by item."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from batch_orchestrator.orchestrator.backoff import backoff_delay
from batch_orchestrator.orchestrator.circuit_breaker import CircuitBreaker
from batch_orchestrator.orchestrator.dead_letter import DeadLetterRecorder
from batch_orchestrator.orchestrator.errors import (
    CircuitOpenError,
    PreconditionError,
    QueueServiceError,
)
from batch_orchestrator.orchestrator.failure_classifier import ErrorClassifier, FailureSignal
from batch_orchestrator.orchestrator.log_line import RunLogAdapter
from batch_orchestrator.orchestrator.models import (
    ItemStatus,
    Phase,
    PhaseResult,
    Precondition,
    RunContext,
    WorkItem,
)
from batch_orchestrator.orchestrator.queue import EMPTY, EmptyQueue, QueueClient

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

ACTION_CHECK_CIRCUIT = (1, "Check circuit")
ACTION_DEQUEUE = (2, "Dequeue item")
ACTION_PRECONDITION = (3, "Check precondition")
ACTION_EXECUTE = (4, "Execute task")
ACTION_ACKNOWLEDGE = (5, "Acknowledge item")


class PhaseRunner:
    """Dequeue -> precondition -> execute -> acknowledge until the queue is empty.

    Item failures are classified, counted against the phase circuit, dead-lettered
    according to policy and reported to the queue service as ``generic_exception``;
    the loop then moves on. Processing locks that expired under a crashed worker
    are recorded and dead-lettered the same way, without touching the circuit.
    Circuit refusal and queue errors propagate and abort the run.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: QueueClient,
        classifier: ErrorClassifier,
        breaker: CircuitBreaker,
        dead_letters: DeadLetterRecorder,
        sleep: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] = lambda: False,
    ) -> None:
        self.queue = queue
        self.classifier = classifier
        self.breaker = breaker
        self.dead_letters = dead_letters
        self._sleep = sleep
        self._stop_requested = stop_requested

    def run(self, phase: Phase, context: RunContext) -> PhaseResult:
        context.enter_phase(phase.name)
        log = RunLogAdapter(logger, context)
        result = PhaseResult(phase=phase.name)
        log.info("Phase started (queue=%s)", phase.queue_name)

        while True:
            if self._stop_requested():
                result.stopped = True
                log.warning("Stop requested; phase %s interrupted", phase.name)
                return result

            if phase.target_id:
                context.at_action(*ACTION_CHECK_CIRCUIT)
                if not self.breaker.check(phase.target_id):
                    raise CircuitOpenError(
                        phase.target_id,
                        self.breaker.seconds_until_trial(phase.target_id),
                    )

            context.at_action(*ACTION_DEQUEUE)
            self._record_expired_locks(phase, context, result, log)
            item = self._dequeue(phase.queue_name)
            if item is EMPTY:
                if phase.target_id:
                    self.breaker.release_trial(phase.target_id)
                result.completed = True
                log.info(
                    "Phase finished: processed=%d failed_attempts=%d dead_letters=%d",
                    result.processed,
                    result.failed_attempts,
                    result.dead_letters,
                )
                return result

            context.current_item_id = item.item_id
            log.info("Claimed item %s (attempt %d)", item.item_id, item.attempt_count)
            try:
                self._process_item(phase, item, context, result, log)
            finally:
                context.current_item_id = None

    def _dequeue(self, queue_name: str) -> WorkItem | EmptyQueue:
        return _queue_call(lambda: self.queue.dequeue(queue_name), "dequeue", queue_name)

    def _record_expired_locks(
        self,
        phase: Phase,
        context: RunContext,
        result: PhaseResult,
        log: RunLogAdapter,
    ) -> None:
        """Turn claims abandoned by a crashed run into recorded failed attempts."""

        expired = _queue_call(
            lambda: self.queue.recover_stale_items(queue_name=phase.queue_name),
            "recover_stale_items",
            phase.queue_name,
        )
        for item in expired:
            context.current_item_id = item.item_id
            try:
                record = self.classifier.classify(
                    FailureSignal(
                        message=(
                            f"Processing lock of item {item.item_id} expired before "
                            f"acknowledgement (attempt {item.attempt_count})"
                        ),
                        location=context.location,
                        transient_hint=True,
                        exception_type="LockExpired",
                    ),
                    context,
                )
                context.errors.append(record)
                log.error("Item %s failed: %s", item.item_id, record.message)
                if self.dead_letters.should_record(item):
                    self.dead_letters.record(record)
                    result.dead_letters += 1
                result.failed_attempts += 1
            finally:
                context.current_item_id = None

    def _process_item(
        self,
        phase: Phase,
        item: WorkItem,
        context: RunContext,
        result: PhaseResult,
        log: RunLogAdapter,
    ) -> None:
        try:
            if phase.precondition is not None:
                context.at_action(*ACTION_PRECONDITION)
                self._ensure_precondition(phase.precondition, context, log)
            context.at_action(*ACTION_EXECUTE)
            output = phase.executor(item.payload, context)
        except Exception as error:  # noqa: BLE001
            self._handle_item_failure(phase, item, context, result, log, error)
            return

        context.at_action(*ACTION_ACKNOWLEDGE)
        self.queue.update_status(item, ItemStatus.PROCESSED, result=output)
        if phase.target_id:
            self.breaker.record_success(phase.target_id)
        result.processed += 1
        log.info("Item %s processed", item.item_id)

    def _ensure_precondition(
        self,
        precondition: Precondition,
        context: RunContext,
        log: RunLogAdapter,
    ) -> None:
        for attempt in range(precondition.max_attempts):
            if precondition.probe(context):
                return
            delay = backoff_delay(attempt=attempt, base_seconds=precondition.backoff_base_seconds)
            log.warning(
                "Precondition %s not ready (attempt %d/%d); recovering, next probe in %.2fs",
                precondition.name,
                attempt + 1,
                precondition.max_attempts,
                delay,
            )
            precondition.recover(context)
            self._sleep(delay)
        if precondition.probe(context):
            return
        raise PreconditionError(precondition.name, precondition.max_attempts)

    def _handle_item_failure(  # noqa: PLR0913
        self,
        phase: Phase,
        item: WorkItem,
        context: RunContext,
        result: PhaseResult,
        log: RunLogAdapter,
        error: Exception,
    ) -> None:
        record = self.classifier.classify(
            FailureSignal.from_exception(error, location=context.location),
            context,
        )
        context.errors.append(record)
        log.error(
            "Item %s failed (%s): %s",
            item.item_id,
            record.failure_kind.value,
            record.message,
        )

        if phase.target_id:
            self.breaker.record_failure(phase.target_id)
        if self.dead_letters.should_record(item):
            self.dead_letters.record(record)
            result.dead_letters += 1

        context.at_action(*ACTION_ACKNOWLEDGE)
        settled = self.queue.update_status(
            item,
            ItemStatus.GENERIC_EXCEPTION,
            notes=record.message,
        )
        result.failed_attempts += 1
        log.info("Item %s settled as %s", item.item_id, settled.value)


def _queue_call(call: Callable[[], _T], operation: str, queue_name: str) -> _T:
    try:
        return call()
    except QueueServiceError:
        raise
    except Exception as error:
        raise QueueServiceError(
            f"{operation} on {queue_name} failed: {error}",
            operation=operation,
            queue_name=queue_name,
        ) from error
