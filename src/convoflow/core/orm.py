"""SQLAlchemy table mappings for automations, runs and timers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes.

    SQLite returns naive datetimes even for ``DateTime(timezone=True)``.
    """
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class AutomationRecord(Base):
    """Authored automation metadata."""

    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    trigger: Mapped[str] = mapped_column(String(50), nullable=False, default="new_conversation")
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="inactive")
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_snapshot_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<AutomationRecord(id={self.id}, name='{self.name}', status={self.status})>"


class StepRecord(Base):
    """Editable step of an automation."""

    __tablename__ = "automation_steps"

    automation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    next_step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_start: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class FlowSnapshotRecord(Base):
    """Immutable copy of a validated step graph."""

    __tablename__ = "flow_snapshots"
    __table_args__ = (UniqueConstraint("automation_id", "version", name="uq_snapshot_version"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    automation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class RunRecord(Base):
    """Durable execution state of one automation in one conversation.

    ``active_key`` is set while the run is non-terminal and cleared when it
    ends; its unique constraint allows one live run per pair and kind.
    """

    __tablename__ = "automation_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    automation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    snapshot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    current_step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    waiting_for: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    wait_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_advanced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    outcome: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="running")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_test: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    active_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)


class TimerEntryRecord(Base):
    """Pending wake-up for a run suspended on a time gap."""

    __tablename__ = "timer_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class RunLogRecord(Base):
    """One step-level entry in a run's execution log."""

    __tablename__ = "run_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    step_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
