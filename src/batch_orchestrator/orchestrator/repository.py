"""Persistent work queue service backed by SQLModel + SQLite."""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from batch_orchestrator.orchestrator.errors import QueueServiceError
from batch_orchestrator.orchestrator.models import (
    ItemStatus,
    WorkItem,
    WorkItemDetails,
    WorkItemEventView,
)
from batch_orchestrator.orchestrator.queue import EMPTY, EmptyQueue
from batch_orchestrator.storage.alembic_runner import upgrade_head
from batch_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from batch_orchestrator.storage.sqlmodel_models import WorkItemEventRow, WorkItemRow

logger = logging.getLogger(__name__)

_BYTES_KEY = "__bytes_b64__"
STALE_LOCK_NOTE = "Processing lock expired before acknowledgement."


class SqliteQueueService:
    """Queue persistence facade implementing :class:`QueueClient`.

    Retry policy: an item may be attempted ``max_retries + 1`` times. A reported
    ``GENERIC_EXCEPTION`` goes back to ``QUEUED`` while budget remains, otherwise it
    becomes terminal ``FAILED``.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        max_retries: int = 1,
        queue_max_retries: Mapping[str, int] | None = None,
        lock_timeout_seconds: int = 1_800,
        worker_id: str | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self.db_path = db_path
        self.max_retries = max_retries
        self.queue_max_retries = dict(queue_max_retries or {})
        self.lock_timeout_seconds = lock_timeout_seconds
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def max_retries_for(self, queue_name: str) -> int:
        return self.queue_max_retries.get(queue_name, self.max_retries)

    def enqueue(
        self,
        queue_name: str,
        payload: Any,
        *,
        priority: int = 100,
        name: str | None = None,
        terminal: bool = False,
    ) -> str:
        """Create a queued item, or a terminal log entry when ``terminal`` is set."""

        now = utc_now()
        item_id = str(uuid4())
        status = ItemStatus.PROCESSED if terminal else ItemStatus.QUEUED
        with Session(self.engine) as session:
            session.add(
                WorkItemRow(
                    item_id=item_id,
                    queue_name=queue_name,
                    name=name,
                    payload_json=_dump_payload(payload),
                    priority=priority,
                    status=status.value,
                    attempt_count=0,
                    max_retries=self.max_retries_for(queue_name),
                    finished_at=to_db_datetime(now) if terminal else None,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.flush()
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="logged" if terminal else "enqueued",
                status_from=None,
                status_to=status,
                details={"queue_name": queue_name, "priority": priority},
            )
            session.commit()
        return item_id

    def dequeue(self, queue_name: str) -> WorkItem | EmptyQueue:
        """Atomically claim the next ready item of ``queue_name``."""

        self.recover_stale_items(queue_name=queue_name)
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(WorkItemRow)
                    .where(
                        WorkItemRow.queue_name == queue_name,
                        WorkItemRow.status == ItemStatus.QUEUED.value,
                    )
                    .order_by(
                        col(WorkItemRow.priority).asc(),
                        col(WorkItemRow.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return EMPTY

                result = session.exec(
                    sa_update(WorkItemRow)
                    .where(
                        col(WorkItemRow.item_id) == candidate.item_id,
                        col(WorkItemRow.status) == ItemStatus.QUEUED.value,
                    )
                    .values(
                        status=ItemStatus.PROCESSING.value,
                        attempt_count=candidate.attempt_count + 1,
                        worker_id=self.worker_id,
                        locked_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(WorkItemRow).where(WorkItemRow.item_id == candidate.item_id),
                ).one()
                self._add_event(
                    session=session,
                    item_id=claimed.item_id,
                    event_type="claimed",
                    status_from=ItemStatus.QUEUED,
                    status_to=ItemStatus.PROCESSING,
                    details={"worker_id": self.worker_id, "attempt": claimed.attempt_count},
                )
                session.commit()
                return _to_work_item(claimed)

    def update_status(
        self,
        item: WorkItem,
        status: ItemStatus,
        *,
        notes: str | None = None,
        result: Any = None,
    ) -> ItemStatus:
        """Acknowledge a processing item; applies retry policy on ``GENERIC_EXCEPTION``."""

        if status not in {ItemStatus.PROCESSED, ItemStatus.GENERIC_EXCEPTION, ItemStatus.FAILED}:
            raise ValueError(f"Unsupported acknowledgement status: {status}")

        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItemRow).where(WorkItemRow.item_id == item.item_id),
            ).one_or_none()
            if row is None:
                raise QueueServiceError(
                    f"Item not found: {item.item_id}",
                    operation="update_status",
                    queue_name=item.queue_name,
                )
            if status == ItemStatus.GENERIC_EXCEPTION:
                settled = (
                    ItemStatus.FAILED
                    if row.attempt_count > row.max_retries
                    else ItemStatus.QUEUED
                )
            else:
                settled = status

            now = utc_now()
            values: dict[str, Any] = {
                "status": settled.value,
                "notes": notes,
                "worker_id": None if settled == ItemStatus.QUEUED else row.worker_id,
                "locked_at": None,
                "updated_at": to_db_datetime(now),
            }
            if settled in {ItemStatus.PROCESSED, ItemStatus.FAILED}:
                values["finished_at"] = to_db_datetime(now)
            if result is not None:
                values["result_json"] = _dump_payload(result)

            updated = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.item_id) == item.item_id,
                    col(WorkItemRow.status) == ItemStatus.PROCESSING.value,
                    col(WorkItemRow.attempt_count) == item.attempt_count,
                )
                .values(**values),
            )
            if updated.rowcount != 1:
                session.rollback()
                raise QueueServiceError(
                    "Item is no longer locked by this attempt "
                    f"(item_id={item.item_id}, attempt={item.attempt_count}).",
                    operation="update_status",
                    queue_name=item.queue_name,
                )

            if status == ItemStatus.GENERIC_EXCEPTION:
                self._add_event(
                    session=session,
                    item_id=item.item_id,
                    event_type="generic_exception",
                    status_from=ItemStatus.PROCESSING,
                    status_to=ItemStatus.GENERIC_EXCEPTION,
                    details={"attempt": row.attempt_count, "notes": notes},
                )
            self._add_event(
                session=session,
                item_id=item.item_id,
                event_type=_settle_event_type(requested=status, settled=settled),
                status_from=(
                    ItemStatus.GENERIC_EXCEPTION
                    if status == ItemStatus.GENERIC_EXCEPTION
                    else ItemStatus.PROCESSING
                ),
                status_to=settled,
                details={
                    "attempt": row.attempt_count,
                    "max_retries": row.max_retries,
                },
            )
            session.commit()
        return settled

    def recover_stale_items(self, *, queue_name: str | None = None) -> list[WorkItem]:
        """Expire processing locks older than the lock timeout as failed attempts.

        Returns the expired attempts as they were claimed, so the caller can record
        them as failures.
        """

        if self.lock_timeout_seconds <= 0:
            return []
        cutoff = utc_now() - timedelta(seconds=self.lock_timeout_seconds)
        recovered: list[WorkItem] = []
        with Session(self.engine) as session:
            statement = select(WorkItemRow).where(
                WorkItemRow.status == ItemStatus.PROCESSING.value,
                col(WorkItemRow.locked_at) < to_db_datetime(cutoff),
            )
            if queue_name is not None:
                statement = statement.where(WorkItemRow.queue_name == queue_name)
            stale_rows = session.exec(statement).all()

        for row in stale_rows:
            item = _to_work_item(row)
            try:
                settled = self.update_status(
                    item,
                    ItemStatus.GENERIC_EXCEPTION,
                    notes=STALE_LOCK_NOTE,
                )
            except QueueServiceError:
                continue
            logger.warning(
                "Expired processing lock of item %s (queue=%s attempt=%d worker=%s); "
                "settled as %s",
                item.item_id,
                item.queue_name,
                item.attempt_count,
                row.worker_id,
                settled.value,
            )
            recovered.append(item)
        return recovered

    def retry_item(self, *, item_id: str) -> None:
        """Manual operator requeue for a failed item; resets its attempt budget."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.item_id) == item_id,
                    col(WorkItemRow.status) == ItemStatus.FAILED.value,
                )
                .values(
                    status=ItemStatus.QUEUED.value,
                    attempt_count=0,
                    worker_id=None,
                    locked_at=None,
                    finished_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Only failed items can be retried manually: {item_id}")
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="manual_retry",
                status_from=ItemStatus.FAILED,
                status_to=ItemStatus.QUEUED,
                details={},
            )
            session.commit()

    def list_items(
        self,
        *,
        queue_name: str | None = None,
        status: ItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItem]:
        """List recent items, optionally filtered by queue and status."""

        with Session(self.engine) as session:
            statement = select(WorkItemRow).order_by(col(WorkItemRow.created_at).desc())
            if queue_name is not None:
                statement = statement.where(WorkItemRow.queue_name == queue_name)
            if status is not None:
                statement = statement.where(WorkItemRow.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_work_item(row) for row in rows]

    def count_by_status(self, queue_name: str) -> dict[ItemStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow.status, func.count())
                .where(WorkItemRow.queue_name == queue_name)
                .group_by(WorkItemRow.status),
            ).all()
        return {ItemStatus(status): count for status, count in rows}

    def get_item_details(self, *, item_id: str) -> WorkItemDetails | None:
        """Return item with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItemRow).where(WorkItemRow.item_id == item_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(WorkItemEventRow)
                .where(WorkItemEventRow.item_id == item_id)
                .order_by(col(WorkItemEventRow.id).asc()),
            ).all()

        events: list[WorkItemEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=event_row.id or 0,
                    item_id=event_row.item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        ItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        ItemStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return WorkItemDetails(
            item=_to_work_item(row),
            created_at=to_utc_aware_datetime(row.created_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
            finished_at=optional_utc_aware(row.finished_at),
            events=events,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: ItemStatus | None,
        status_to: ItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEventRow(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _settle_event_type(*, requested: ItemStatus, settled: ItemStatus) -> str:
    if settled == ItemStatus.QUEUED:
        return "retry_scheduled"
    if settled == ItemStatus.FAILED and requested == ItemStatus.GENERIC_EXCEPTION:
        return "retries_exhausted"
    return settled.value


def _dump_payload(payload: Any) -> str:
    if isinstance(payload, bytes | bytearray):
        payload = {_BYTES_KEY: base64.b64encode(bytes(payload)).decode("ascii")}
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_payload(raw: str | None) -> Any:
    if raw is None:
        return None
    payload = json.loads(raw)
    if isinstance(payload, dict) and set(payload) == {_BYTES_KEY}:
        return base64.b64decode(payload[_BYTES_KEY])
    return payload


def _to_work_item(row: WorkItemRow) -> WorkItem:
    return WorkItem(
        item_id=row.item_id,
        queue_name=row.queue_name,
        name=row.name,
        payload=_load_payload(row.payload_json),
        priority=row.priority,
        attempt_count=row.attempt_count,
        max_retries=row.max_retries,
        status=ItemStatus(row.status),
        notes=row.notes,
        result=_load_payload(row.result_json),
    )
