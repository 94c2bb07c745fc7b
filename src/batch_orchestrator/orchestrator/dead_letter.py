"""Dead-letter recording of classified failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from batch_orchestrator.orchestrator.backoff import retry_with_backoff
from batch_orchestrator.orchestrator.models import DeadLetterPolicy, ErrorRecord, WorkItem
from batch_orchestrator.orchestrator.queue import QueueClient

logger = logging.getLogger(__name__)

DEFAULT_ERROR_QUEUE = "orchestrator_errors"


class DeadLetterRecorder:
    """Append error records to a dedicated error queue as terminal log entries."""

    def __init__(
        self,
        queue: QueueClient,
        *,
        queue_name: str = DEFAULT_ERROR_QUEUE,
        policy: DeadLetterPolicy = DeadLetterPolicy.EVERY_FAILURE,
        write_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.policy = policy
        self.write_attempts = write_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.sleep = sleep

    def should_record(self, item: WorkItem | None) -> bool:
        """Apply the policy to an item failure; run-level failures always qualify."""

        if item is None or self.policy == DeadLetterPolicy.EVERY_FAILURE:
            return True
        return item.is_last_attempt

    def record(self, record: ErrorRecord) -> str:
        """Write one terminal entry, retrying the write with backoff before giving up."""

        entry_id = retry_with_backoff(
            lambda: self.queue.enqueue(
                self.queue_name,
                record.to_payload(),
                name=_entry_name(record),
                terminal=True,
            ),
            max_attempts=self.write_attempts,
            base_seconds=self.backoff_base_seconds,
            sleep=self.sleep,
            description="dead-letter write",
        )
        logger.info(
            "Dead-letter entry %s: execution=%s phase=%s item=%s provenance=%s kind=%s",
            entry_id,
            record.execution_id,
            record.phase,
            record.item_id,
            record.provenance.value,
            record.failure_kind.value,
        )
        return entry_id


def _entry_name(record: ErrorRecord) -> str:
    parts = [record.execution_id, record.phase or "run"]
    if record.item_id:
        parts.append(record.item_id)
    return ":".join(parts)
