"""Task executor implementations."""

from batch_orchestrator.orchestrator.executors.base import CommandRunRequest, CommandRunResult
from batch_orchestrator.orchestrator.executors.command import CommandTaskExecutor

__all__ = [
    "CommandRunRequest",
    "CommandRunResult",
    "CommandTaskExecutor",
]
