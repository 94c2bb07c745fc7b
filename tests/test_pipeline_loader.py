from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from batch_orchestrator.orchestrator.errors import ConfigurationError
from batch_orchestrator.orchestrator.executors import CommandTaskExecutor
from batch_orchestrator.orchestrator.models import RunContext
from batch_orchestrator.orchestrator.pipeline import load_pipeline

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Pipeline Definition"),
]


def _load(path: Path, tmp_path: Path):
    return load_pipeline(
        path,
        workdir=tmp_path / "work",
        default_timeout_seconds=30,
        precondition_max_attempts=4,
        backoff_base_seconds=0.25,
    )


def _write(tmp_path: Path, content: object) -> Path:
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps(content), "utf-8")
    return path


def test_loads_phases_in_declared_order(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        {
            "flow_name": "invoices",
            "phases": [
                {"name": "extract", "command": "extract {payload_file}", "target": "erp"},
                {
                    "name": "load",
                    "queue": "load_q",
                    "command": "load {payload_file}",
                    "timeout_seconds": 5,
                },
            ],
        },
    )

    pipeline = _load(path, tmp_path)

    assert pipeline.flow_name == "invoices"
    assert [phase.name for phase in pipeline.phases] == ["extract", "load"]
    extract, load = pipeline.phases
    assert extract.queue_name == "extract"
    assert extract.target_id == "erp"
    assert load.queue_name == "load_q"
    assert load.target_id is None
    assert isinstance(load.executor, CommandTaskExecutor)
    assert load.executor.timeout_seconds == 5
    assert isinstance(extract.executor, CommandTaskExecutor)
    assert extract.executor.timeout_seconds == 30


def test_accepts_bare_phase_list(tmp_path: Path) -> None:
    path = _write(tmp_path, [{"name": "only", "command": "run"}])

    pipeline = _load(path, tmp_path)

    assert pipeline.flow_name is None
    assert [phase.name for phase in pipeline.phases] == ["only"]


def test_precondition_probe_runs_command(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        [
            {
                "name": "extract",
                "command": "run",
                "precondition": {
                    "name": "erp_up",
                    "probe": f"{sys.executable} -c pass",
                },
            },
            {
                "name": "load",
                "command": "run",
                "precondition": {
                    "probe": f"{sys.executable} -c \"raise SystemExit(3)\"",
                    "max_attempts": 1,
                },
            },
        ],
    )
    context = RunContext(execution_id="e", host="h", agent="a", flow_name="f")

    extract, load = _load(path, tmp_path).phases

    assert extract.precondition is not None
    assert extract.precondition.name == "erp_up"
    assert extract.precondition.max_attempts == 4
    assert extract.precondition.backoff_base_seconds == 0.25
    assert extract.precondition.probe(context) is True
    assert load.precondition is not None
    assert load.precondition.name == "load_ready"
    assert load.precondition.max_attempts == 1
    assert load.precondition.probe(context) is False


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ([], "non-empty list"),
        ({"phases": "nope"}, "non-empty list"),
        ([{"command": "run"}], "'name'"),
        ([{"name": "extract"}], "'command'"),
        (["extract"], "JSON object"),
        ([{"name": "x", "command": "run", "precondition": {}}], "probe"),
    ],
)
def test_invalid_pipeline_is_rejected(tmp_path: Path, content: object, message: str) -> None:
    path = _write(tmp_path, content)

    with pytest.raises(ConfigurationError, match=message):
        _load(path, tmp_path)


def test_missing_or_malformed_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        _load(tmp_path / "missing.json", tmp_path)

    broken = tmp_path / "broken.json"
    broken.write_text("{", "utf-8")
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        _load(broken, tmp_path)
