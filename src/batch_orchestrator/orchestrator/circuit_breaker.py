"""Per-target circuit breaker with persisted state.

States:

- ``closed``: calls pass; consecutive failures are counted and the circuit opens
  when the count reaches the threshold.
- ``open``: calls are refused until ``cooldown_seconds`` have passed since the last
  failure; the first check after that moves to ``half_open`` (no timer involved).
- ``half_open``: exactly one trial call is admitted. Its success closes the circuit,
  its failure reopens it. The trial is a lease: a trial never acknowledged (crashed
  run) expires after ``cooldown_seconds`` and the next check admits a new one, and
  :meth:`CircuitBreaker.release_trial` hands back a trial that made no call.

Every transition is a compare-and-swap against the :class:`StateStore`, so two
processes sharing a store never lose each other's updates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import TypeVar

from batch_orchestrator.orchestrator.circuit_store import StateStore
from batch_orchestrator.orchestrator.errors import CircuitStateConflictError
from batch_orchestrator.orchestrator.models import CircuitState, CircuitStateName
from batch_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_Step = tuple[CircuitState | None, tuple[CircuitState, bool]]

DEFAULT_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 300.0


class CircuitBreaker:
    """Closed/Open/HalfOpen guard keyed by downstream target id."""

    def __init__(
        self,
        store: StateStore,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        max_swap_attempts: int = 5,
    ) -> None:
        if threshold < 1:
            raise ValueError("Circuit threshold must be >= 1.")
        if cooldown_seconds < 0:
            raise ValueError("Circuit cooldown must be >= 0.")
        self.store = store
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._max_swap_attempts = max_swap_attempts

    def state(self, target_id: str) -> CircuitState:
        """Current stored state, or a fresh closed state for unknown targets."""

        return self.store.load(target_id) or self._initial_state(target_id)

    def check(self, target_id: str) -> bool:
        """Return whether a call to ``target_id`` may proceed now."""

        def transition(current: CircuitState, now: datetime) -> tuple[CircuitState | None, bool]:
            if current.state == CircuitStateName.CLOSED:
                return None, True
            if current.state == CircuitStateName.OPEN:
                if self._remaining_cooldown(current, now) > 0:
                    return None, False
                return (
                    replace(
                        current,
                        state=CircuitStateName.HALF_OPEN,
                        trial_in_flight=True,
                        last_transition_time=now,
                    ),
                    True,
                )
            if current.trial_in_flight and self._trial_lease_remaining(current, now) > 0:
                return None, False
            if current.trial_in_flight:
                logger.warning("Circuit %s trial lease expired; admitting a new trial", target_id)
            return replace(current, trial_in_flight=True, last_transition_time=now), True

        allowed = self._mutate(target_id, transition)
        if not allowed:
            logger.debug("Circuit %s refused call", target_id)
        return allowed

    def seconds_until_trial(self, target_id: str) -> float:
        current = self.state(target_id)
        if current.state != CircuitStateName.OPEN:
            return 0.0
        return self._remaining_cooldown(current, self._clock())

    def release_trial(self, target_id: str) -> CircuitState:
        """Give back a half-open trial that made no call, e.g. the queue was empty."""

        def transition(current: CircuitState, now: datetime) -> _Step:
            if current.state == CircuitStateName.HALF_OPEN and current.trial_in_flight:
                released = replace(current, trial_in_flight=False)
                return released, (released, True)
            return None, (current, False)

        result, released = self._mutate(target_id, transition)
        if released:
            logger.info("Circuit %s trial released unused", target_id)
        return result

    def record_success(self, target_id: str) -> CircuitState:
        def transition(current: CircuitState, now: datetime) -> _Step:
            if current.state == CircuitStateName.HALF_OPEN:
                closed = self._closed(current, now)
                return closed, (closed, True)
            if current.state == CircuitStateName.CLOSED and current.failure_count > 0:
                reset = replace(current, failure_count=0)
                return reset, (reset, False)
            return None, (current, False)

        result, closed = self._mutate(target_id, transition)
        if closed:
            logger.info("Circuit %s closed after successful trial call", target_id)
        return result

    def record_failure(self, target_id: str) -> CircuitState:
        def transition(current: CircuitState, now: datetime) -> _Step:
            failure_count = current.failure_count + 1
            if current.state == CircuitStateName.CLOSED and failure_count < self.threshold:
                counted = replace(current, failure_count=failure_count, last_failure_time=now)
                return counted, (counted, False)
            if current.state in {CircuitStateName.CLOSED, CircuitStateName.HALF_OPEN}:
                opened = self._opened(current, now, failure_count)
                return opened, (opened, True)
            refreshed = replace(current, failure_count=failure_count, last_failure_time=now)
            return refreshed, (refreshed, False)

        result, opened = self._mutate(target_id, transition)
        if opened:
            logger.warning(
                "Circuit %s opened after %d failure(s); cooldown %.1fs",
                target_id,
                result.failure_count,
                self.cooldown_seconds,
            )
        return result

    def reset(self, target_id: str) -> CircuitState:
        """Operator override: force the circuit closed."""

        def transition(current: CircuitState, now: datetime) -> _Step:
            closed = self._closed(current, now)
            return closed, (closed, True)

        logger.info("Circuit %s reset by operator", target_id)
        result, _ = self._mutate(target_id, transition)
        return result

    def _mutate(
        self,
        target_id: str,
        transition: Callable[[CircuitState, datetime], tuple[CircuitState | None, _T]],
    ) -> _T:
        for _ in range(self._max_swap_attempts):
            stored = self.store.load(target_id)
            current = stored or self._initial_state(target_id)
            current = replace(
                current,
                threshold=self.threshold,
                cooldown_seconds=self.cooldown_seconds,
            )
            next_state, value = transition(current, self._clock())
            if next_state is None:
                return value
            if self.store.compare_and_swap(target_id, stored, next_state):
                return value
        raise CircuitStateConflictError(
            f"Circuit state for {target_id} changed concurrently {self._max_swap_attempts} times.",
        )

    def _initial_state(self, target_id: str) -> CircuitState:
        return CircuitState(
            target_id=target_id,
            state=CircuitStateName.CLOSED,
            failure_count=0,
            threshold=self.threshold,
            cooldown_seconds=self.cooldown_seconds,
        )

    def _remaining_cooldown(self, current: CircuitState, now: datetime) -> float:
        if current.last_failure_time is None:
            return 0.0
        elapsed = (now - current.last_failure_time).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)

    def _trial_lease_remaining(self, current: CircuitState, now: datetime) -> float:
        if current.last_transition_time is None:
            return 0.0
        elapsed = (now - current.last_transition_time).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)

    def _opened(self, current: CircuitState, now: datetime, failure_count: int) -> CircuitState:
        return replace(
            current,
            state=CircuitStateName.OPEN,
            failure_count=failure_count,
            last_failure_time=now,
            last_transition_time=now,
            trial_in_flight=False,
        )

    def _closed(self, current: CircuitState, now: datetime) -> CircuitState:
        return replace(
            current,
            state=CircuitStateName.CLOSED,
            failure_count=0,
            last_transition_time=now,
            trial_in_flight=False,
        )
