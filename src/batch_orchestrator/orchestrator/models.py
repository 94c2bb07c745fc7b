"""Domain models for phases, queue items, executions and failures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from batch_orchestrator.orchestrator.errors import format_location


class ItemStatus(str, Enum):
    """Work item lifecycle states owned by the queue service."""

    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    GENERIC_EXCEPTION = "generic_exception"
    FAILED = "failed"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.PROCESSED, ItemStatus.FAILED})


class FinalStatus(str, Enum):
    """Terminal status of one orchestrator run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ERROR = "error"
    ABORTED = "aborted"


class Provenance(str, Enum):
    """Where a failure originated."""

    TASK = "task"
    ORCHESTRATOR = "orchestrator"


class FailureKind(str, Enum):
    """Retry-relevant failure taxonomy."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class CircuitStateName(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DeadLetterPolicy(str, Enum):
    """Which item failures are written to the dead-letter queue."""

    EVERY_FAILURE = "every_failure"
    TERMINAL_ONLY = "terminal_only"


@dataclass(slots=True, frozen=True)
class WorkItem:
    """Read-only view of a dequeued queue item."""

    item_id: str
    queue_name: str
    name: str | None
    payload: Any
    priority: int
    attempt_count: int
    max_retries: int
    status: ItemStatus
    notes: str | None = None
    result: Any = None

    @property
    def is_last_attempt(self) -> bool:
        """True when a failure of this attempt exhausts the retry budget."""

        return self.attempt_count > self.max_retries


@dataclass(slots=True)
class WorkItemEventView:
    """Audit trail entry for one queue item."""

    event_id: int
    item_id: str
    event_type: str
    status_from: ItemStatus | None
    status_to: ItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    item: WorkItem
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    events: list[WorkItemEventView]


@dataclass(slots=True)
class RunContext:
    """Explicit per-run state threaded through every component call."""

    execution_id: str
    host: str
    agent: str
    flow_name: str
    current_phase: str | None = None
    current_item_id: str | None = None
    subflow: str = "Main"
    action_line: str = ""
    action_name: str = ""
    errors: list[ErrorRecord] = field(default_factory=list)

    def enter_phase(self, phase_name: str) -> None:
        self.current_phase = phase_name
        self.subflow = phase_name
        self.current_item_id = None
        self.action_line = ""
        self.action_name = ""

    def at_action(self, index: int, name: str) -> None:
        self.action_line = str(index)
        self.action_name = name

    @property
    def location(self) -> str:
        """Single-line location of the current action, without commas."""

        return format_location(
            subflow=self.subflow,
            action_index=self.action_line,
            action_name=self.action_name,
        )


@dataclass(slots=True)
class Precondition:
    """Readiness probe plus recovery action run before each item of a phase."""

    name: str
    probe: Callable[[RunContext], bool]
    recover: Callable[[RunContext], None]
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0


TaskExecutor = Callable[[Any, RunContext], Any]


@dataclass(slots=True)
class Phase:
    """One ordered pipeline step bound to a queue and a task executor."""

    name: str
    queue_name: str
    executor: TaskExecutor
    precondition: Precondition | None = None
    target_id: str | None = None


@dataclass(slots=True)
class PhaseResult:
    """Counters for one drained phase."""

    phase: str
    processed: int = 0
    failed_attempts: int = 0
    dead_letters: int = 0
    completed: bool = False
    stopped: bool = False


@dataclass(slots=True)
class ExecutionRecord:
    """Bookkeeping for one orchestrator run."""

    execution_id: str
    run_id: str
    host: str
    agent: str
    flow_name: str
    start_time: datetime
    end_time: datetime | None
    final_status: FinalStatus
    observation: str | None
    resume_cursor: str | None
    current_phase: str | None

    @property
    def is_open(self) -> bool:
        return self.end_time is None


@dataclass(slots=True, frozen=True)
class ErrorRecord:
    """Structured failure written once to the dead-letter queue."""

    execution_id: str
    source_flow: str
    subflow: str
    action_index: str
    action_name: str
    message: str
    evidence_ref: str
    provenance: Provenance
    failure_kind: FailureKind
    phase: str | None = None
    item_id: str | None = None

    def to_payload(self) -> dict[str, str]:
        """Serialize to the dead-letter JSON schema."""

        return {
            "ExecutionId": self.execution_id,
            "DesktopFlow": self.source_flow,
            "Subflow": self.subflow,
            "Action": self.action_index,
            "Action name": self.action_name,
            "Error Message": self.message,
            "Error Evidence": self.evidence_ref,
        }


@dataclass(slots=True)
class CircuitState:
    """Persisted breaker state for one downstream target."""

    target_id: str
    state: CircuitStateName
    failure_count: int
    threshold: int
    cooldown_seconds: float
    last_failure_time: datetime | None = None
    last_transition_time: datetime | None = None
    trial_in_flight: bool = False
    version: int = 0


@dataclass(slots=True)
class RunOutcome:
    """Run-completion contract returned to the calling layer."""

    record: ExecutionRecord
    phase_results: list[PhaseResult] = field(default_factory=list)
    error_payload: dict[str, str] | None = None

    @property
    def succeeded(self) -> bool:
        return self.record.final_status == FinalStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.record.final_status == FinalStatus.SUCCEEDED:
            return 0
        if self.record.final_status == FinalStatus.ABORTED:
            return 130
        return 1
