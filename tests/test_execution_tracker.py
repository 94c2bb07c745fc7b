from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from batch_orchestrator.orchestrator.execution_tracker import (
    SUPERSEDED_OBSERVATION,
    ExecutionMeta,
    ExecutionTracker,
)
from batch_orchestrator.orchestrator.models import FinalStatus
from batch_orchestrator.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Execution Tracking"),
]


@pytest.fixture()
def tracker(tmp_path: Path) -> Iterator[ExecutionTracker]:
    db_path = tmp_path / "runs.db"
    upgrade_head(db_path)
    execution_tracker = ExecutionTracker(db_path)
    try:
        yield execution_tracker
    finally:
        execution_tracker.close()


def _meta(**overrides: str | None) -> ExecutionMeta:
    values: dict[str, str | None] = {"host": "host-a", "agent": "robot-7", "flow_name": "invoices"}
    values.update(overrides)
    return ExecutionMeta(**values)  # type: ignore[arg-type]


def test_start_allocates_execution_id_and_opens_run(tracker: ExecutionTracker) -> None:
    execution_id = tracker.start(_meta())

    record = tracker.get(execution_id)
    assert record is not None
    assert record.final_status == FinalStatus.RUNNING
    assert record.is_open
    assert record.host == "host-a"
    assert record.agent == "robot-7"
    assert record.flow_name == "invoices"
    assert record.start_time.tzinfo is not None


def test_end_closes_run_exactly_once(tracker: ExecutionTracker) -> None:
    execution_id = tracker.start(_meta())

    assert tracker.end(execution_id, FinalStatus.SUCCEEDED, "all good") is True
    assert tracker.end(execution_id, FinalStatus.ERROR, "late") is False

    record = tracker.get(execution_id)
    assert record is not None
    assert record.final_status == FinalStatus.SUCCEEDED
    assert record.observation == "all good"
    assert record.end_time is not None
    assert record.end_time >= record.start_time


def test_end_rejects_running_status(tracker: ExecutionTracker) -> None:
    execution_id = tracker.start(_meta())

    with pytest.raises(ValueError, match="running"):
        tracker.end(execution_id, FinalStatus.RUNNING, None)


def test_update_cursor_persists_current_phase(tracker: ExecutionTracker) -> None:
    execution_id = tracker.start(_meta())

    tracker.update_cursor(execution_id, "transform")

    record = tracker.get(execution_id)
    assert record is not None
    assert record.current_phase == "transform"


def test_resume_closes_stale_open_run(tracker: ExecutionTracker) -> None:
    execution_id = tracker.start(_meta())
    first = tracker.get(execution_id)
    assert first is not None

    resumed_id = tracker.start(_meta(execution_id=execution_id, resume_cursor="transform"))

    assert resumed_id == execution_id
    runs = [record for record in tracker.list_executions() if record.execution_id == execution_id]
    assert len(runs) == 2
    stale = next(record for record in runs if record.run_id == first.run_id)
    assert stale.final_status == FinalStatus.ABORTED
    assert stale.observation == SUPERSEDED_OBSERVATION
    current = next(record for record in runs if record.run_id != first.run_id)
    assert current.is_open
    assert current.resume_cursor == "transform"


def test_list_executions_is_newest_first(tracker: ExecutionTracker) -> None:
    first = tracker.start(_meta())
    second = tracker.start(_meta())

    listed = [record.execution_id for record in tracker.list_executions(limit=10)]

    assert listed[:2] == [second, first]
    assert tracker.get("missing") is None
