from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from batch_orchestrator.orchestrator.circuit_breaker import CircuitBreaker
from batch_orchestrator.orchestrator.circuit_store import (
    JsonFileCircuitStateStore,
    SqliteCircuitStateStore,
    StateStore,
)
from batch_orchestrator.orchestrator.errors import CircuitStateConflictError
from batch_orchestrator.orchestrator.models import CircuitState, CircuitStateName
from batch_orchestrator.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Circuit Breaker"),
]


@pytest.fixture(params=["sqlite", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[StateStore]:
    if request.param == "sqlite":
        db_path = tmp_path / "circuits.db"
        upgrade_head(db_path)
        sqlite_store = SqliteCircuitStateStore(db_path)
        try:
            yield sqlite_store
        finally:
            sqlite_store.close()
    else:
        yield JsonFileCircuitStateStore(tmp_path / "circuits.json")


def test_unknown_target_is_closed(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=3, cooldown_seconds=60, clock=clock)

    assert breaker.check("erp") is True
    assert breaker.state("erp").state == CircuitStateName.CLOSED
    assert store.load("erp") is None


def test_opens_exactly_at_threshold(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=3, cooldown_seconds=60, clock=clock)

    breaker.record_failure("erp")
    breaker.record_failure("erp")
    assert breaker.state("erp").state == CircuitStateName.CLOSED
    assert breaker.check("erp") is True

    opened = breaker.record_failure("erp")

    assert opened.state == CircuitStateName.OPEN
    assert opened.failure_count == 3
    assert breaker.check("erp") is False
    assert breaker.seconds_until_trial("erp") == pytest.approx(60)


def test_success_in_closed_resets_consecutive_failures(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=2, cooldown_seconds=60, clock=clock)

    breaker.record_failure("erp")
    breaker.record_success("erp")
    breaker.record_failure("erp")

    assert breaker.state("erp").state == CircuitStateName.CLOSED
    assert breaker.state("erp").failure_count == 1


def test_cooldown_admits_exactly_one_trial_call(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure("erp")

    clock.advance(29)
    assert breaker.check("erp") is False

    clock.advance(1)
    assert breaker.check("erp") is True
    state = breaker.state("erp")
    assert state.state == CircuitStateName.HALF_OPEN
    assert state.trial_in_flight is True
    assert breaker.check("erp") is False


def test_successful_trial_closes_circuit(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure("erp")
    clock.advance(10)
    assert breaker.check("erp") is True

    closed = breaker.record_success("erp")

    assert closed.state == CircuitStateName.CLOSED
    assert closed.failure_count == 0
    assert closed.trial_in_flight is False
    assert breaker.check("erp") is True


def test_failed_trial_reopens_with_fresh_cooldown(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure("erp")
    clock.advance(10)
    assert breaker.check("erp") is True

    reopened = breaker.record_failure("erp")

    assert reopened.state == CircuitStateName.OPEN
    assert reopened.last_failure_time == clock.now
    assert breaker.check("erp") is False
    clock.advance(10)
    assert breaker.check("erp") is True


def test_unacknowledged_trial_expires_after_cooldown(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure("erp")
    clock.advance(30)
    assert breaker.check("erp") is True

    clock.advance(29)
    assert breaker.check("erp") is False

    clock.advance(1)
    assert breaker.check("erp") is True
    assert breaker.check("erp") is False
    assert breaker.state("erp").state == CircuitStateName.HALF_OPEN


def test_released_trial_is_admitted_again(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=30, clock=clock)
    breaker.record_failure("erp")
    clock.advance(30)
    assert breaker.check("erp") is True

    released = breaker.release_trial("erp")

    assert released.state == CircuitStateName.HALF_OPEN
    assert released.trial_in_flight is False
    assert breaker.check("erp") is True
    assert breaker.check("erp") is False


def test_release_trial_ignores_closed_circuit(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=30, clock=clock)

    state = breaker.release_trial("erp")

    assert state.state == CircuitStateName.CLOSED
    assert store.load("erp") is None


def test_operator_reset_forces_closed(store: StateStore, clock) -> None:
    breaker = CircuitBreaker(store, threshold=1, cooldown_seconds=600, clock=clock)
    breaker.record_failure("erp")

    state = breaker.reset("erp")

    assert state.state == CircuitStateName.CLOSED
    assert breaker.check("erp") is True


def test_state_is_shared_through_the_store(store: StateStore, clock) -> None:
    first = CircuitBreaker(store, threshold=2, cooldown_seconds=60, clock=clock)
    second = CircuitBreaker(store, threshold=2, cooldown_seconds=60, clock=clock)

    first.record_failure("erp")
    second.record_failure("erp")

    assert first.check("erp") is False
    assert [state.target_id for state in store.list_states()] == ["erp"]


def test_compare_and_swap_rejects_stale_version(store: StateStore) -> None:
    initial = CircuitState(
        target_id="erp",
        state=CircuitStateName.CLOSED,
        failure_count=0,
        threshold=3,
        cooldown_seconds=60,
    )
    assert store.compare_and_swap("erp", None, initial) is True
    assert store.compare_and_swap("erp", None, initial) is False

    stored = store.load("erp")
    assert stored is not None
    assert stored.version == 1
    bumped = replace(stored, failure_count=1)
    assert store.compare_and_swap("erp", stored, bumped) is True
    assert store.compare_and_swap("erp", stored, bumped) is False

    latest = store.load("erp")
    assert latest is not None
    assert latest.version == 2
    assert latest.failure_count == 1
    assert store.delete("erp") is True
    assert store.load("erp") is None


class _AlwaysConflictingStore:
    def load(self, target_id: str) -> CircuitState | None:
        return None

    def compare_and_swap(
        self,
        target_id: str,
        expected: CircuitState | None,
        next_state: CircuitState,
    ) -> bool:
        return False

    def list_states(self) -> list[CircuitState]:
        return []

    def delete(self, target_id: str) -> bool:
        return False


def test_persistent_conflict_raises_after_bounded_attempts(clock) -> None:
    breaker = CircuitBreaker(_AlwaysConflictingStore(), threshold=1, clock=clock)

    with pytest.raises(CircuitStateConflictError, match="changed concurrently"):
        breaker.record_failure("erp")


def test_invalid_threshold_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="threshold"):
        CircuitBreaker(JsonFileCircuitStateStore(tmp_path / "c.json"), threshold=0)
