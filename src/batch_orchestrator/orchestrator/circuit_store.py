"""Persistence backends for circuit breaker state."""

from __future__ import annotations

import json
import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from batch_orchestrator.orchestrator.models import CircuitState, CircuitStateName
from batch_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    from_iso,
    optional_utc_aware,
    to_db_datetime,
    utc_now,
)
from batch_orchestrator.storage.sqlmodel_models import CircuitStateRow


class StateStore(Protocol):
    """Versioned circuit state storage.

    ``compare_and_swap`` writes ``next_state`` only if the stored version still equals
    ``expected.version`` (or nothing is stored when ``expected`` is ``None``). The stored
    version becomes ``expected.version + 1``.
    """

    def load(self, target_id: str) -> CircuitState | None: ...

    def compare_and_swap(
        self,
        target_id: str,
        expected: CircuitState | None,
        next_state: CircuitState,
    ) -> bool: ...

    def list_states(self) -> list[CircuitState]: ...

    def delete(self, target_id: str) -> bool: ...


class SqliteCircuitStateStore:
    """Circuit state rows with optimistic version check."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def load(self, target_id: str) -> CircuitState | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CircuitStateRow).where(CircuitStateRow.target_id == target_id),
            ).one_or_none()
        return _row_to_state(row) if row is not None else None

    def compare_and_swap(
        self,
        target_id: str,
        expected: CircuitState | None,
        next_state: CircuitState,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            if expected is None:
                session.add(
                    CircuitStateRow(
                        target_id=target_id,
                        state=next_state.state.value,
                        failure_count=next_state.failure_count,
                        threshold=next_state.threshold,
                        cooldown_seconds=next_state.cooldown_seconds,
                        trial_in_flight=next_state.trial_in_flight,
                        version=1,
                        last_failure_at=_optional_db(next_state.last_failure_time),
                        last_transition_at=_optional_db(next_state.last_transition_time),
                        updated_at=now,
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

            result = session.exec(
                sa_update(CircuitStateRow)
                .where(
                    col(CircuitStateRow.target_id) == target_id,
                    col(CircuitStateRow.version) == expected.version,
                )
                .values(
                    state=next_state.state.value,
                    failure_count=next_state.failure_count,
                    threshold=next_state.threshold,
                    cooldown_seconds=next_state.cooldown_seconds,
                    trial_in_flight=next_state.trial_in_flight,
                    version=expected.version + 1,
                    last_failure_at=_optional_db(next_state.last_failure_time),
                    last_transition_at=_optional_db(next_state.last_transition_time),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_states(self) -> list[CircuitState]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CircuitStateRow).order_by(col(CircuitStateRow.target_id).asc()),
            ).all()
        return [_row_to_state(row) for row in rows]

    def delete(self, target_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(CircuitStateRow).where(CircuitStateRow.target_id == target_id),
            ).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True


class JsonFileCircuitStateStore:
    """All circuit states in one JSON file, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def close(self) -> None:
        return None

    def load(self, target_id: str) -> CircuitState | None:
        return self._read_all().get(target_id)

    def compare_and_swap(
        self,
        target_id: str,
        expected: CircuitState | None,
        next_state: CircuitState,
    ) -> bool:
        states = self._read_all()
        current = states.get(target_id)
        if expected is None:
            if current is not None:
                return False
            new_version = 1
        else:
            if current is None or current.version != expected.version:
                return False
            new_version = expected.version + 1
        states[target_id] = replace(next_state, target_id=target_id, version=new_version)
        self._write_all(states)
        return True

    def list_states(self) -> list[CircuitState]:
        states = self._read_all()
        return [states[key] for key in sorted(states)]

    def delete(self, target_id: str) -> bool:
        states = self._read_all()
        if target_id not in states:
            return False
        del states[target_id]
        self._write_all(states)
        return True

    def _read_all(self) -> dict[str, CircuitState]:
        if not self.path.exists():
            return {}
        raw = json.loads(self.path.read_text("utf-8") or "{}")
        if not isinstance(raw, dict):
            raise ValueError(f"Circuit state file is not a JSON object: {self.path}")
        return {target_id: _dict_to_state(target_id, payload) for target_id, payload in raw.items()}

    def _write_all(self, states: dict[str, CircuitState]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(f"{self.path.suffix}.tmp")
        tmp_path.write_text(
            json.dumps(
                {target_id: _state_to_dict(state) for target_id, state in states.items()},
                ensure_ascii=False,
                indent=2,
                sort_keys=True,
            ),
            "utf-8",
        )
        os.replace(tmp_path, self.path)


def _optional_db(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _row_to_state(row: CircuitStateRow) -> CircuitState:
    return CircuitState(
        target_id=row.target_id,
        state=CircuitStateName(row.state),
        failure_count=row.failure_count,
        threshold=row.threshold,
        cooldown_seconds=row.cooldown_seconds,
        last_failure_time=optional_utc_aware(row.last_failure_at),
        last_transition_time=optional_utc_aware(row.last_transition_at),
        trial_in_flight=row.trial_in_flight,
        version=row.version,
    )


def _state_to_dict(state: CircuitState) -> dict[str, object]:
    return {
        "state": state.state.value,
        "failure_count": state.failure_count,
        "threshold": state.threshold,
        "cooldown_seconds": state.cooldown_seconds,
        "last_failure_time": (
            state.last_failure_time.isoformat() if state.last_failure_time else None
        ),
        "last_transition_time": (
            state.last_transition_time.isoformat() if state.last_transition_time else None
        ),
        "trial_in_flight": state.trial_in_flight,
        "version": state.version,
    }


def _dict_to_state(target_id: str, payload: dict[str, object]) -> CircuitState:
    last_failure = payload.get("last_failure_time")
    last_transition = payload.get("last_transition_time")
    return CircuitState(
        target_id=target_id,
        state=CircuitStateName(str(payload["state"])),
        failure_count=int(payload.get("failure_count", 0)),  # type: ignore[arg-type]
        threshold=int(payload["threshold"]),  # type: ignore[arg-type]
        cooldown_seconds=float(payload["cooldown_seconds"]),  # type: ignore[arg-type]
        last_failure_time=from_iso(last_failure) if isinstance(last_failure, str) else None,
        last_transition_time=(
            from_iso(last_transition) if isinstance(last_transition, str) else None
        ),
        trial_in_flight=bool(payload.get("trial_in_flight", False)),
        version=int(payload.get("version", 0)),  # type: ignore[arg-type]
    )
