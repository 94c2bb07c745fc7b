"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from batch_orchestrator.orchestrator.models import RunContext
from batch_orchestrator.orchestrator.repository import SqliteQueueService
from batch_orchestrator.storage.common import utc_now

ECHO_TASK_COMMAND_TEMPLATE = (
    f"{sys.executable} -m batch_orchestrator.orchestrator.executors.echo_task "
    "--payload-file {payload_file}"
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def echo_task_command() -> str:
    return ECHO_TASK_COMMAND_TEMPLATE


@pytest.fixture()
def queue_service(tmp_path: Path) -> Iterator[SqliteQueueService]:
    service = SqliteQueueService(tmp_path / "queue.db", max_retries=1)
    service.init_schema()
    try:
        yield service
    finally:
        service.close()


@pytest.fixture()
def run_context() -> RunContext:
    return RunContext(
        execution_id="exec-1",
        host="test-host",
        agent="test-agent",
        flow_name="invoices",
    )


@pytest.fixture()
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every BATCH_ORCH_* path at ``tmp_path`` and return the DB path."""

    db_path = tmp_path / "orchestrator.db"
    monkeypatch.setenv("BATCH_ORCH_DB_PATH", str(db_path))
    monkeypatch.setenv("BATCH_ORCH_EVIDENCE_DIR", str(tmp_path / "evidence"))
    monkeypatch.setenv("BATCH_ORCH_WORKDIR", str(tmp_path / "work"))
    monkeypatch.setenv("BATCH_ORCH_CIRCUIT_STATE_PATH", str(tmp_path / "circuits.json"))
    monkeypatch.setenv("BATCH_ORCH_HOST", "test-host")
    monkeypatch.setenv("BATCH_ORCH_BACKOFF_BASE_SECONDS", "0")
    monkeypatch.delenv("BATCH_ORCH_CIRCUIT_STORE", raising=False)
    monkeypatch.delenv("BATCH_ORCH_DEAD_LETTER_POLICY", raising=False)
    monkeypatch.delenv("BATCH_ORCH_MAX_RETRIES", raising=False)
    return db_path


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
