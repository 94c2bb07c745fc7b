"""Start/end bookkeeping for orchestrator runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from batch_orchestrator.orchestrator.models import ExecutionRecord, FinalStatus
from batch_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from batch_orchestrator.storage.sqlmodel_models import ExecutionRunRow

logger = logging.getLogger(__name__)

SUPERSEDED_OBSERVATION = "Run left open by a previous process; superseded by resume."


@dataclass(slots=True)
class ExecutionMeta:
    """Identity of the process starting a run."""

    host: str
    agent: str
    flow_name: str
    execution_id: str | None = None
    resume_cursor: str | None = None


class ExecutionTracker:
    """Persist one row per run; ``end`` closes it exactly once.

    A resumed execution keeps its ``execution_id`` and gets a new run row.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def start(self, meta: ExecutionMeta) -> str:
        """Open a run row and return its execution id (new or resumed)."""

        execution_id = meta.execution_id or str(uuid4())
        now = utc_now()
        with Session(self.engine) as session:
            if meta.execution_id is not None:
                superseded = session.exec(
                    sa_update(ExecutionRunRow)
                    .where(
                        col(ExecutionRunRow.execution_id) == execution_id,
                        col(ExecutionRunRow.finished_at).is_(None),
                    )
                    .values(
                        status=FinalStatus.ABORTED.value,
                        observation=SUPERSEDED_OBSERVATION,
                        finished_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if superseded.rowcount:
                    logger.warning(
                        "Closed %d stale run(s) of execution %s before resuming",
                        superseded.rowcount,
                        execution_id,
                    )
            session.add(
                ExecutionRunRow(
                    run_id=str(uuid4()),
                    execution_id=execution_id,
                    host=meta.host,
                    agent=meta.agent,
                    flow_name=meta.flow_name,
                    status=FinalStatus.RUNNING.value,
                    resume_cursor=meta.resume_cursor,
                    current_phase=None,
                    started_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return execution_id

    def update_cursor(self, execution_id: str, phase_name: str) -> None:
        """Persist the phase about to run, so a crash resumes there."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(ExecutionRunRow)
                .where(
                    col(ExecutionRunRow.execution_id) == execution_id,
                    col(ExecutionRunRow.finished_at).is_(None),
                )
                .values(current_phase=phase_name, updated_at=to_db_datetime(now)),
            )
            session.commit()

    def end(self, execution_id: str, final_status: FinalStatus, observation: str | None) -> bool:
        """Close the open run of ``execution_id``; False when nothing was open."""

        if final_status == FinalStatus.RUNNING:
            raise ValueError("A run cannot end with status running.")
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExecutionRunRow)
                .where(
                    col(ExecutionRunRow.execution_id) == execution_id,
                    col(ExecutionRunRow.finished_at).is_(None),
                )
                .values(
                    status=final_status.value,
                    observation=observation,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount == 0:
                session.rollback()
                return False
            session.commit()
        return True

    def get(self, execution_id: str) -> ExecutionRecord | None:
        """Latest run of an execution."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionRunRow)
                .where(ExecutionRunRow.execution_id == execution_id)
                .order_by(col(ExecutionRunRow.started_at).desc())
                .limit(1),
            ).one_or_none()
        return _to_record(row) if row is not None else None

    def list_executions(self, *, limit: int = 20) -> list[ExecutionRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionRunRow)
                .order_by(col(ExecutionRunRow.started_at).desc())
                .limit(limit),
            ).all()
        return [_to_record(row) for row in rows]


def _to_record(row: ExecutionRunRow) -> ExecutionRecord:
    return ExecutionRecord(
        execution_id=row.execution_id,
        run_id=row.run_id,
        host=row.host,
        agent=row.agent,
        flow_name=row.flow_name,
        start_time=to_utc_aware_datetime(row.started_at),
        end_time=optional_utc_aware(row.finished_at),
        final_status=FinalStatus(row.status),
        observation=row.observation,
        resume_cursor=row.resume_cursor,
        current_phase=row.current_phase,
    )
