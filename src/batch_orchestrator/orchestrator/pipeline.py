"""Load phase definitions from a JSON pipeline file.

Format::

    {
      "flow_name": "invoices",
      "phases": [
        {"name": "extract", "queue": "extract_q", "command": "extract --in {payload_file}",
         "target": "erp", "timeout_seconds": 120,
         "precondition": {"name": "erp_up", "probe": "ping-erp", "recover": "restart-erp"}}
      ]
    }

A bare list of phase objects is accepted as well.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from batch_orchestrator.orchestrator.errors import ConfigurationError
from batch_orchestrator.orchestrator.executors.command import CommandTaskExecutor, build_argv
from batch_orchestrator.orchestrator.models import Phase, Precondition, RunContext

_PROBE_TIMEOUT_SECONDS = 60


@dataclass(slots=True)
class PipelineDefinition:
    flow_name: str | None
    phases: list[Phase]


def load_pipeline(  # noqa: PLR0913
    path: Path,
    *,
    workdir: Path,
    default_timeout_seconds: float,
    precondition_max_attempts: int,
    backoff_base_seconds: float,
    shutdown_requested: Callable[[], bool] | None = None,
    graceful_shutdown_seconds: float | None = None,
) -> PipelineDefinition:
    """Parse and validate the pipeline file into executable phases."""

    if not path.exists():
        raise ConfigurationError(f"Pipeline file not found: {path}")
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"Pipeline file is not valid JSON: {path}: {error}") from error

    flow_name: str | None = None
    entries: Any = raw
    if isinstance(raw, dict):
        flow_name = _optional_str(raw.get("flow_name"))
        entries = raw.get("phases")
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError(f"Pipeline must declare a non-empty list of phases: {path}")

    phases: list[Phase] = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Phase #{index} must be a JSON object.")
        name = _required_str(entry, "name", index=index)
        timeout = float(entry.get("timeout_seconds", default_timeout_seconds))
        phases.append(
            Phase(
                name=name,
                queue_name=_optional_str(entry.get("queue")) or name,
                executor=CommandTaskExecutor(
                    _required_str(entry, "command", index=index),
                    workdir=workdir,
                    timeout_seconds=timeout,
                    shutdown_requested=shutdown_requested,
                    graceful_shutdown_seconds=graceful_shutdown_seconds,
                ),
                precondition=_precondition(
                    entry.get("precondition"),
                    phase_name=name,
                    max_attempts=precondition_max_attempts,
                    backoff_base_seconds=backoff_base_seconds,
                ),
                target_id=_optional_str(entry.get("target")),
            ),
        )
    return PipelineDefinition(flow_name=flow_name, phases=phases)


def _precondition(
    raw: Any,
    *,
    phase_name: str,
    max_attempts: int,
    backoff_base_seconds: float,
) -> Precondition | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not _optional_str(raw.get("probe")):
        raise ConfigurationError(f"Precondition of phase {phase_name} needs a probe command.")
    probe_template = str(raw["probe"])
    recover_template = _optional_str(raw.get("recover"))

    def probe(context: RunContext) -> bool:
        return _run_check(probe_template, context) == 0

    def recover(context: RunContext) -> None:
        if recover_template is not None:
            _run_check(recover_template, context)

    return Precondition(
        name=_optional_str(raw.get("name")) or f"{phase_name}_ready",
        probe=probe,
        recover=recover,
        max_attempts=int(raw.get("max_attempts", max_attempts)),
        backoff_base_seconds=float(raw.get("backoff_base_seconds", backoff_base_seconds)),
    )


def _run_check(template: str, context: RunContext) -> int:
    argv = build_argv(
        template,
        values={
            "execution_id": context.execution_id,
            "phase": context.current_phase or "",
            "item_id": context.current_item_id or "",
        },
    )
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            timeout=_PROBE_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return 1
    return completed.returncode


def _required_str(entry: dict[str, Any], key: str, *, index: int) -> str:
    value = _optional_str(entry.get(key))
    if value is None:
        raise ConfigurationError(f"Phase #{index} is missing required field {key!r}.")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
