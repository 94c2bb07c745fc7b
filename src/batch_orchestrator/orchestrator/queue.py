"""Queue service contract used by the engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Final, Literal, Protocol

from batch_orchestrator.orchestrator.models import ItemStatus, WorkItem


class _Empty(Enum):
    EMPTY = "EMPTY"

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY: Final = _Empty.EMPTY
"""Dequeue sentinel: the queue has no ready item. Not an error."""

EmptyQueue = Literal[_Empty.EMPTY]


class QueueClient(Protocol):
    """Durable priority queue with atomic dequeue-and-lock.

    The service owns retry policy: the engine reports ``GENERIC_EXCEPTION`` and the
    service decides between a retry (back to ``QUEUED``) and terminal ``FAILED``.
    """

    def enqueue(
        self,
        queue_name: str,
        payload: Any,
        *,
        priority: int = 100,
        name: str | None = None,
        terminal: bool = False,
    ) -> str:
        """Add an item and return its id; ``terminal`` stores a log-only entry."""

    def dequeue(self, queue_name: str) -> WorkItem | EmptyQueue:
        """Claim the next ready item or return ``EMPTY``."""

    def update_status(
        self,
        item: WorkItem,
        status: ItemStatus,
        *,
        notes: str | None = None,
        result: Any = None,
    ) -> ItemStatus:
        """Acknowledge a claimed item and return the status the service settled on."""

    def recover_stale_items(self, *, queue_name: str | None = None) -> list[WorkItem]:
        """Settle claims whose lock expired as failed attempts and return them."""
