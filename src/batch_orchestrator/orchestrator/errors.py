"""Exception types raised by the orchestrator engine."""

from __future__ import annotations

TASK_FAILURE_MARKER = "Failed to run flow"


class OrchestratorError(RuntimeError):
    """Base class for engine failures.

    Raised outside an item step it aborts the run; raised by a precondition or a
    task executor it stays scoped to the item.
    """


class ConfigurationError(OrchestratorError):
    """Invalid pipeline or runtime configuration."""


class QueueServiceError(OrchestratorError):
    """Queue call failed for a reason other than an empty queue."""

    def __init__(self, message: str, *, operation: str, queue_name: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.queue_name = queue_name


class ResumeCursorError(OrchestratorError):
    """Resume cursor does not name a declared phase."""


class CircuitOpenError(OrchestratorError):
    """Circuit for a downstream target refuses calls."""

    def __init__(self, target_id: str, seconds_until_trial: float) -> None:
        self.target_id = target_id
        self.seconds_until_trial = seconds_until_trial
        super().__init__(
            f"Circuit {target_id} is open. Trial call allowed in {seconds_until_trial:.1f}s",
        )


class CircuitStateConflictError(OrchestratorError):
    """Circuit state kept changing concurrently; compare-and-swap gave up."""


class PreconditionError(OrchestratorError):
    """Phase precondition stayed unsatisfied after recovery attempts."""

    def __init__(self, name: str, attempts: int, message: str | None = None) -> None:
        self.name = name
        self.attempts = attempts
        super().__init__(
            message or f"Precondition {name} not ready after {attempts} recovery attempt(s)",
        )


class TaskExecutionError(OrchestratorError):
    """Task executor failure carrying a multi-line detail blob.

    ``detail`` uses labelled lines::

        Subflow: <name>
        Action: <index>
        Action name: <name>
        Error message: <text>
    """

    def __init__(self, message: str, *, detail: str = "", transient: bool | None = None) -> None:
        if TASK_FAILURE_MARKER not in message:
            message = f"{TASK_FAILURE_MARKER}: {message}"
        super().__init__(message)
        self.detail = detail
        self.transient = transient


def format_task_detail(
    *,
    subflow: str,
    action_index: int | str,
    action_name: str,
    message: str,
) -> str:
    """Render the labelled detail blob understood by the classifier."""

    return (
        f"Subflow: {subflow}\n"
        f"Action: {action_index}\n"
        f"Action name: {action_name}\n"
        f"Error message: {message}"
    )


def format_location(*, subflow: str, action_index: int | str, action_name: str) -> str:
    """Render an orchestrator-level ``location`` (no commas allowed)."""

    return (
        f"Subflow: {subflow}; Action: {action_index}; Action name: {action_name}".replace(",", " ")
    )
