"""Request/result records for subprocess-backed task execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class CommandRunRequest:
    """Inputs required to run one task attempt as a subprocess."""

    argv: list[str]
    env: dict[str, str]
    timeout_seconds: float
    stdout_path: Path
    stderr_path: Path
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float | None = None


@dataclass(slots=True)
class CommandRunResult:
    """Execution outcome of one subprocess attempt."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path

    def stdout_text(self) -> str:
        return self.stdout_path.read_text("utf-8") if self.stdout_path.exists() else ""

    def stderr_text(self) -> str:
        return self.stderr_path.read_text("utf-8") if self.stderr_path.exists() else ""
