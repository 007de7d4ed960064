"""Durable run state with optimistic concurrency."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.database import DatabaseManager
from ..core.exceptions import ConcurrencyConflict, RunAlreadyActive, RunNotFound
from ..core.logger import get_logger
from ..core.orm import RunLogRecord, RunRecord, TimerEntryRecord, ensure_utc
from .models import LogStatus, Run, RunLogEntry, RunOutcome, WaitingFor

logger = get_logger("runs.store")


def _to_run(record: RunRecord) -> Run:
    return Run(
        id=record.id,
        automation_id=record.automation_id,
        conversation_id=record.conversation_id,
        contact_id=record.contact_id,
        snapshot_id=record.snapshot_id,
        current_step_id=record.current_step_id,
        waiting_for=WaitingFor(record.waiting_for),
        wait_until=ensure_utc(record.wait_until),
        variables=dict(record.variables or {}),
        trigger_data=dict(record.trigger_data or {}),
        started_at=ensure_utc(record.started_at),  # type: ignore[arg-type]
        last_advanced_at=ensure_utc(record.last_advanced_at),  # type: ignore[arg-type]
        completed_at=ensure_utc(record.completed_at),
        version=record.version,
        outcome=RunOutcome(record.outcome),
        last_error=record.last_error,
        is_test=record.is_test,
        last_message_id=record.last_message_id,
    )


def _mutable_values(run: Run) -> dict[str, Any]:
    return {
        "current_step_id": run.current_step_id,
        "waiting_for": run.waiting_for.value,
        "wait_until": run.wait_until,
        "variables": dict(run.variables),
        "last_advanced_at": run.last_advanced_at,
        "completed_at": run.completed_at,
        "outcome": run.outcome.value,
        "last_error": run.last_error,
        "last_message_id": run.last_message_id,
        "active_key": run.active_key,
    }


def _to_log_entry(record: RunLogRecord) -> RunLogEntry:
    return RunLogEntry(
        id=record.id,
        run_id=record.run_id,
        step_id=record.step_id,
        step_type=record.step_type,
        status=LogStatus(record.status),
        detail=dict(record.detail or {}),
        error=record.error,
        created_at=ensure_utc(record.created_at),
    )


class RunStore:
    """Reads and conditionally writes runs.

    Writes go through :meth:`save`, which only succeeds when the stored
    version still equals the version the caller read. Methods taking a
    ``session`` participate in the caller's transaction; the others open
    their own.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, session: Session, run: Run) -> Run:
        """Insert a new run.

        Raises:
            RunAlreadyActive: If a live run of the same kind already exists
        """
        session.add(
            RunRecord(
                id=run.id,
                automation_id=run.automation_id,
                conversation_id=run.conversation_id,
                contact_id=run.contact_id,
                snapshot_id=run.snapshot_id,
                started_at=run.started_at,
                version=run.version,
                trigger_data=dict(run.trigger_data),
                is_test=run.is_test,
                **_mutable_values(run),
            )
        )
        try:
            session.flush()
        except IntegrityError as e:
            raise RunAlreadyActive(run.automation_id, run.conversation_id) from e
        return run

    def save(self, session: Session, run: Run, expected_version: int) -> Run:
        """Write ``run`` if the stored version is still ``expected_version``.

        Returns:
            The run carrying its new version

        Raises:
            ConcurrencyConflict: If another writer got there first
        """
        new_version = expected_version + 1
        result = session.execute(
            update(RunRecord)
            .where(RunRecord.id == run.id, RunRecord.version == expected_version)
            .values(version=new_version, **_mutable_values(run))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(run.id, expected_version)
        return run.clone(version=new_version)

    def append_logs(self, session: Session, entries: Iterable[RunLogEntry]) -> None:
        for entry in entries:
            session.add(
                RunLogRecord(
                    run_id=entry.run_id,
                    step_id=entry.step_id,
                    step_type=entry.step_type,
                    status=entry.status.value,
                    detail=dict(entry.detail),
                    error=entry.error,
                    created_at=entry.created_at,
                )
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, session: Session, run_id: str) -> Run | None:
        record = session.get(RunRecord, run_id, populate_existing=True)
        return _to_run(record) if record else None

    def get(self, run_id: str) -> Run | None:
        with self.db.session() as session:
            return self.load(session, run_id)

    def require(self, run_id: str) -> Run:
        """Get a run or raise :class:`RunNotFound`."""
        run = self.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def find_active(
        self, automation_id: str, conversation_id: str, is_test: bool = False
    ) -> Run | None:
        """Live run of the given kind for an automation and conversation."""
        with self.db.session() as session:
            record = session.scalars(
                select(RunRecord).where(
                    RunRecord.automation_id == automation_id,
                    RunRecord.conversation_id == conversation_id,
                    RunRecord.is_test == is_test,
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                )
            ).first()
            return _to_run(record) if record else None

    def list_waiting_for_message(self, conversation_id: str) -> list[Run]:
        """Live runs of a conversation suspended on a reply or keyword."""
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord)
                .where(
                    RunRecord.conversation_id == conversation_id,
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                    RunRecord.waiting_for.in_(
                        [WaitingFor.USER_REPLY.value, WaitingFor.KEYWORD_CATCH.value]
                    ),
                )
                .order_by(RunRecord.started_at, RunRecord.id)
            ).all()
            return [_to_run(record) for record in records]

    def list_active_for_automation(self, automation_id: str) -> list[Run]:
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord).where(
                    RunRecord.automation_id == automation_id,
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                )
            ).all()
            return [_to_run(record) for record in records]

    def list_active_for_conversation(self, conversation_id: str) -> list[Run]:
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord)
                .where(
                    RunRecord.conversation_id == conversation_id,
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                )
                .order_by(RunRecord.started_at, RunRecord.id)
            ).all()
            return [_to_run(record) for record in records]

    def list_pending(self, conversation_id: str | None = None, limit: int = 100) -> list[Run]:
        """Live runs suspended on the user, oldest wait first."""
        query = select(RunRecord).where(
            RunRecord.outcome == RunOutcome.RUNNING.value,
            RunRecord.waiting_for.in_(
                [WaitingFor.USER_REPLY.value, WaitingFor.KEYWORD_CATCH.value]
            ),
        )
        if conversation_id is not None:
            query = query.where(RunRecord.conversation_id == conversation_id)
        query = query.order_by(RunRecord.last_advanced_at, RunRecord.id).limit(limit)
        with self.db.session() as session:
            return [_to_run(record) for record in session.scalars(query).all()]

    def list_for_automation(
        self, automation_id: str, limit: int = 50, include_tests: bool = True
    ) -> list[Run]:
        """Execution history, most recent first."""
        query = select(RunRecord).where(RunRecord.automation_id == automation_id)
        if not include_tests:
            query = query.where(RunRecord.is_test.is_(False))
        query = query.order_by(RunRecord.started_at.desc(), RunRecord.id).limit(limit)
        with self.db.session() as session:
            return [_to_run(record) for record in session.scalars(query).all()]

    def list_overdue_time_gaps(self, cutoff: datetime, limit: int = 500) -> list[Run]:
        """Production runs stuck on a time gap past ``cutoff`` with no pending timer."""
        pending = exists().where(TimerEntryRecord.run_id == RunRecord.id)
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord)
                .where(
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                    RunRecord.waiting_for == WaitingFor.TIME_GAP.value,
                    RunRecord.is_test.is_(False),
                    RunRecord.wait_until < cutoff,
                    ~pending,
                )
                .order_by(RunRecord.wait_until)
                .limit(limit)
            ).all()
            return [_to_run(record) for record in records]

    def list_stale_waits(self, cutoff: datetime, limit: int = 500) -> list[Run]:
        """Live runs that have waited on a message since before ``cutoff``."""
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord)
                .where(
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                    RunRecord.waiting_for.in_(
                        [WaitingFor.USER_REPLY.value, WaitingFor.KEYWORD_CATCH.value]
                    ),
                    RunRecord.last_advanced_at < cutoff,
                )
                .order_by(RunRecord.last_advanced_at)
                .limit(limit)
            ).all()
            return [_to_run(record) for record in records]

    def list_stalled_deliveries(self, cutoff: datetime, limit: int = 500) -> list[Run]:
        """Production runs parked on a send since before ``cutoff``."""
        with self.db.session() as session:
            records = session.scalars(
                select(RunRecord)
                .where(
                    RunRecord.outcome == RunOutcome.RUNNING.value,
                    RunRecord.waiting_for == WaitingFor.DELIVERY.value,
                    RunRecord.is_test.is_(False),
                    RunRecord.last_advanced_at < cutoff,
                )
                .order_by(RunRecord.last_advanced_at)
                .limit(limit)
            ).all()
            return [_to_run(record) for record in records]

    def logs_for(self, run_id: str) -> list[RunLogEntry]:
        """Execution log of a run in write order."""
        with self.db.session() as session:
            records = session.scalars(
                select(RunLogRecord).where(RunLogRecord.run_id == run_id).order_by(RunLogRecord.id)
            ).all()
            return [_to_log_entry(record) for record in records]
