from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from batch_orchestrator.orchestrator.errors import QueueServiceError
from batch_orchestrator.orchestrator.models import ItemStatus, WorkItem
from batch_orchestrator.orchestrator.queue import EMPTY
from batch_orchestrator.orchestrator.repository import STALE_LOCK_NOTE, SqliteQueueService
from batch_orchestrator.storage.common import to_db_datetime, utc_now
from batch_orchestrator.storage.sqlmodel_models import WorkItemRow

pytestmark = [
    allure.epic("Queue Service"),
    allure.feature("Claim, Acknowledge & Retry Policy"),
]


def _claim(queue: SqliteQueueService, queue_name: str) -> WorkItem:
    item = queue.dequeue(queue_name)
    assert item is not EMPTY
    assert isinstance(item, WorkItem)
    return item


def test_dequeue_returns_empty_sentinel_for_empty_queue(queue_service: SqliteQueueService) -> None:
    assert queue_service.dequeue("extract") is EMPTY


def test_dequeue_orders_by_priority_then_age(queue_service: SqliteQueueService) -> None:
    low = queue_service.enqueue("extract", {"n": 1}, priority=200)
    first = queue_service.enqueue("extract", {"n": 2}, priority=10)
    second = queue_service.enqueue("extract", {"n": 3}, priority=10)
    queue_service.enqueue("other", {"n": 4}, priority=0)

    claimed = [_claim(queue_service, "extract").item_id for _ in range(3)]

    assert claimed == [first, second, low]
    assert queue_service.dequeue("extract") is EMPTY


def test_dequeue_locks_item_and_counts_attempt(queue_service: SqliteQueueService) -> None:
    item_id = queue_service.enqueue("extract", {"invoice": "A"}, name="invoice-A")

    item = _claim(queue_service, "extract")

    assert item.item_id == item_id
    assert item.status == ItemStatus.PROCESSING
    assert item.attempt_count == 1
    assert item.payload == {"invoice": "A"}
    assert item.name == "invoice-A"
    assert queue_service.dequeue("extract") is EMPTY


def test_generic_exception_requeues_until_retries_exhausted(
    queue_service: SqliteQueueService,
) -> None:
    item_id = queue_service.enqueue("extract", {"invoice": "B"})

    first = _claim(queue_service, "extract")
    assert not first.is_last_attempt
    settled = queue_service.update_status(first, ItemStatus.GENERIC_EXCEPTION, notes="boom")
    assert settled == ItemStatus.QUEUED

    second = _claim(queue_service, "extract")
    assert second.item_id == item_id
    assert second.attempt_count == 2
    assert second.is_last_attempt
    settled = queue_service.update_status(second, ItemStatus.GENERIC_EXCEPTION, notes="boom")
    assert settled == ItemStatus.FAILED
    assert queue_service.dequeue("extract") is EMPTY

    details = queue_service.get_item_details(item_id=item_id)
    assert details is not None
    assert details.item.status == ItemStatus.FAILED
    assert details.item.notes == "boom"
    assert details.finished_at is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "generic_exception",
        "retry_scheduled",
        "claimed",
        "generic_exception",
        "retries_exhausted",
    ]


def test_zero_max_retries_fails_on_first_generic_exception(tmp_path: Path) -> None:
    queue = SqliteQueueService(tmp_path / "queue.db", max_retries=0)
    queue.init_schema()
    try:
        queue.enqueue("extract", {})
        item = _claim(queue, "extract")
        assert queue.update_status(item, ItemStatus.GENERIC_EXCEPTION) == ItemStatus.FAILED
    finally:
        queue.close()


def test_per_queue_retry_override(tmp_path: Path) -> None:
    queue = SqliteQueueService(
        tmp_path / "queue.db",
        max_retries=0,
        queue_max_retries={"flaky": 2},
    )
    queue.init_schema()
    try:
        queue.enqueue("flaky", {})
        for _ in range(2):
            item = _claim(queue, "flaky")
            assert queue.update_status(item, ItemStatus.GENERIC_EXCEPTION) == ItemStatus.QUEUED
        item = _claim(queue, "flaky")
        assert item.attempt_count == 3
        assert queue.update_status(item, ItemStatus.GENERIC_EXCEPTION) == ItemStatus.FAILED
    finally:
        queue.close()


def test_processed_stores_result(queue_service: SqliteQueueService) -> None:
    item_id = queue_service.enqueue("extract", {"invoice": "A"})
    item = _claim(queue_service, "extract")

    settled = queue_service.update_status(item, ItemStatus.PROCESSED, result={"total": 42})

    assert settled == ItemStatus.PROCESSED
    details = queue_service.get_item_details(item_id=item_id)
    assert details is not None
    assert details.item.result == {"total": 42}
    assert details.events[-1].event_type == "processed"


def test_acknowledging_twice_is_rejected(queue_service: SqliteQueueService) -> None:
    queue_service.enqueue("extract", {})
    item = _claim(queue_service, "extract")
    queue_service.update_status(item, ItemStatus.PROCESSED)

    with pytest.raises(QueueServiceError, match="no longer locked") as error:
        queue_service.update_status(item, ItemStatus.GENERIC_EXCEPTION)
    assert error.value.operation == "update_status"


def test_update_status_rejects_non_acknowledgement_status(
    queue_service: SqliteQueueService,
) -> None:
    queue_service.enqueue("extract", {})
    item = _claim(queue_service, "extract")

    with pytest.raises(ValueError, match="Unsupported acknowledgement status"):
        queue_service.update_status(item, ItemStatus.QUEUED)


def test_terminal_enqueue_is_a_log_entry(queue_service: SqliteQueueService) -> None:
    entry_id = queue_service.enqueue("errors", {"Error Message": "x"}, terminal=True)

    assert queue_service.dequeue("errors") is EMPTY
    details = queue_service.get_item_details(item_id=entry_id)
    assert details is not None
    assert details.item.status == ItemStatus.PROCESSED
    assert [event.event_type for event in details.events] == ["logged"]


def test_stale_processing_lock_is_recovered_as_failed_attempt(tmp_path: Path) -> None:
    queue = SqliteQueueService(tmp_path / "queue.db", max_retries=1, lock_timeout_seconds=60)
    queue.init_schema()
    try:
        item_id = queue.enqueue("extract", {})
        _claim(queue, "extract")
        with Session(queue.engine) as session:
            session.exec(
                sa_update(WorkItemRow)
                .where(col(WorkItemRow.item_id) == item_id)
                .values(locked_at=to_db_datetime(utc_now() - timedelta(minutes=5))),
            )
            session.commit()

        recovered = _claim(queue, "extract")

        assert recovered.item_id == item_id
        assert recovered.attempt_count == 2
        details = queue.get_item_details(item_id=item_id)
        assert details is not None
        generic = [event for event in details.events if event.event_type == "generic_exception"]
        assert generic[0].details["notes"] == STALE_LOCK_NOTE
    finally:
        queue.close()


def test_recover_stale_items_returns_and_logs_expired_attempts(
    queue_service: SqliteQueueService,
    caplog: pytest.LogCaptureFixture,
) -> None:
    item_id = queue_service.enqueue("extract", {})
    _claim(queue_service, "extract")
    with Session(queue_service.engine) as session:
        session.exec(
            sa_update(WorkItemRow)
            .where(col(WorkItemRow.item_id) == item_id)
            .values(locked_at=to_db_datetime(utc_now() - timedelta(hours=1))),
        )
        session.commit()

    with caplog.at_level(logging.WARNING, logger="batch_orchestrator.orchestrator.repository"):
        expired = queue_service.recover_stale_items(queue_name="extract")

    assert [item.item_id for item in expired] == [item_id]
    assert expired[0].attempt_count == 1
    assert expired[0].status == ItemStatus.PROCESSING
    assert f"Expired processing lock of item {item_id}" in caplog.text
    assert queue_service.recover_stale_items(queue_name="extract") == []


def test_enqueue_writes_item_before_its_audit_event(queue_service: SqliteQueueService) -> None:
    with queue_service.engine.connect() as connection:
        foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar_one()
    assert foreign_keys == 1

    item_id = queue_service.enqueue("extract", {"invoice": 9})
    entry_id = queue_service.enqueue("errors", {"message": "x"}, terminal=True)

    item = queue_service.get_item_details(item_id=item_id)
    entry = queue_service.get_item_details(item_id=entry_id)
    assert item is not None and [event.event_type for event in item.events] == ["enqueued"]
    assert entry is not None and [event.event_type for event in entry.events] == ["logged"]


def test_manual_retry_requeues_failed_item_with_fresh_budget(
    queue_service: SqliteQueueService,
) -> None:
    item_id = queue_service.enqueue("extract", {})
    item = _claim(queue_service, "extract")
    queue_service.update_status(item, ItemStatus.FAILED, notes="permanent")

    queue_service.retry_item(item_id=item_id)

    retried = _claim(queue_service, "extract")
    assert retried.item_id == item_id
    assert retried.attempt_count == 1


def test_manual_retry_rejects_items_that_are_not_failed(
    queue_service: SqliteQueueService,
) -> None:
    item_id = queue_service.enqueue("extract", {})

    with pytest.raises(RuntimeError, match="Only failed items"):
        queue_service.retry_item(item_id=item_id)


def test_list_items_and_counts(queue_service: SqliteQueueService) -> None:
    queue_service.enqueue("extract", {"n": 1})
    queue_service.enqueue("extract", {"n": 2})
    item = _claim(queue_service, "extract")
    queue_service.update_status(item, ItemStatus.PROCESSED)

    assert queue_service.count_by_status("extract") == {
        ItemStatus.QUEUED: 1,
        ItemStatus.PROCESSED: 1,
    }
    processed = queue_service.list_items(queue_name="extract", status=ItemStatus.PROCESSED)
    assert [entry.item_id for entry in processed] == [item.item_id]
    assert len(queue_service.list_items(limit=1)) == 1


def test_bytes_payload_survives_storage(queue_service: SqliteQueueService) -> None:
    queue_service.enqueue("binary", b"\x00\x01raw")

    assert _claim(queue_service, "binary").payload == b"\x00\x01raw"


def test_concurrent_workers_never_claim_the_same_item(tmp_path: Path) -> None:
    db_path = tmp_path / "queue.db"
    seeder = SqliteQueueService(db_path)
    seeder.init_schema()
    expected = {seeder.enqueue("extract", {"n": index}) for index in range(20)}
    seeder.close()

    claimed: list[str] = []
    lock = threading.Lock()
    errors: list[BaseException] = []

    def _drain() -> None:
        worker = SqliteQueueService(db_path, busy_timeout_ms=10_000)
        try:
            while True:
                item = worker.dequeue("extract")
                if item is EMPTY:
                    return
                with lock:
                    claimed.append(item.item_id)
                worker.update_status(item, ItemStatus.PROCESSED)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)
        finally:
            worker.close()

    threads = [threading.Thread(target=_drain) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == expected
