"""Evidence capture collaborators used when a failure is classified."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Protocol

from batch_orchestrator.orchestrator.models import RunContext

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class EvidenceCollector(Protocol):
    """Capture a point-in-time artifact and return its reference (path or URI)."""

    def capture(self, context: RunContext, *, label: str, message: str) -> str: ...


class NullEvidenceCollector:
    """Collector for pipelines without evidence capture."""

    def capture(self, context: RunContext, *, label: str, message: str) -> str:
        return ""


class SnapshotEvidenceCollector:
    """Write a JSON snapshot of the run context next to other run evidence.

    File names derive from execution id, label and the number of errors seen so far.
    Files are created exclusively, so a resumed run reusing the execution id gets a
    numbered suffix instead of overwriting earlier evidence.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def capture(self, context: RunContext, *, label: str, message: str) -> str:
        execution_dir = self.root_dir / _safe(context.execution_id)
        execution_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{len(context.errors) + 1:04d}_{_safe(label)}"
        body = json.dumps(
            {
                "execution_id": context.execution_id,
                "host": context.host,
                "agent": context.agent,
                "flow_name": context.flow_name,
                "phase": context.current_phase,
                "item_id": context.current_item_id,
                "subflow": context.subflow,
                "action_line": context.action_line,
                "message": message,
            },
            ensure_ascii=False,
            indent=2,
            sort_keys=True,
        )
        path = execution_dir / f"{stem}.json"
        suffix = 1
        while True:
            try:
                with path.open("x", encoding="utf-8") as handle:
                    handle.write(body)
            except FileExistsError:
                suffix += 1
                path = execution_dir / f"{stem}-{suffix}.json"
                continue
            return str(path)


def _safe(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value).strip("_") or "evidence"
