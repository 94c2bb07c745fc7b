"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class WorkItemRow(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_work_items_dequeue", "queue_name", "status", "priority", "created_at"),
    )

    item_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    name: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=100)
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    max_retries: int = Field(default=0)
    worker_id: str | None = None
    notes: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEventRow(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionRunRow(SQLModel, table=True):
    __tablename__ = "execution_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_runs_execution", "execution_id", "started_at"),)

    run_id: str = Field(primary_key=True)
    execution_id: str = Field(index=True)
    host: str
    agent: str
    flow_name: str
    status: str = Field(index=True)
    resume_cursor: str | None = None
    current_phase: str | None = None
    observation: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CircuitStateRow(SQLModel, table=True):
    __tablename__ = "circuit_states"  # type: ignore[bad-override]

    target_id: str = Field(primary_key=True)
    state: str
    failure_count: int = Field(default=0)
    threshold: int
    cooldown_seconds: float
    trial_in_flight: bool = Field(default=False)
    version: int = Field(default=0)
    last_failure_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_transition_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
