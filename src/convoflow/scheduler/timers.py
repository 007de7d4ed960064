"""Durable timers for runs suspended on a time gap.

Timers are rows, not in-process delays: a wait of seconds or days survives
restarts because every sweep re-reads the due rows from the database.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..core.config import SchedulerConfig
from ..core.database import DatabaseManager
from ..core.exceptions import SchedulerMissedWindow
from ..core.logger import get_logger
from ..core.orm import TimerEntryRecord, ensure_utc, utcnow
from ..engine.events import TimerFired
from ..runs.store import RunStore

if TYPE_CHECKING:
    from ..engine.engine import ExecutionEngine

logger = get_logger("scheduler.timers")

REPLY_TIMEOUT_ERROR = "reply_timeout"


@dataclass(frozen=True)
class TimerEntry:
    """Pending wake-up for one run."""

    id: int
    run_id: str
    step_id: str
    due_at: datetime


@dataclass
class SweepReport:
    """What one sweep did."""

    fired: list[str] = field(default_factory=list)
    redelivered: list[str] = field(default_factory=list)
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    missed_windows: list[SchedulerMissedWindow] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.fired) + len(self.redelivered) + len(self.errors)

    def merge(self, other: SweepReport) -> SweepReport:
        self.fired.extend(other.fired)
        self.redelivered.extend(other.redelivered)
        self.skipped += other.skipped
        self.errors.update(other.errors)
        self.missed_windows.extend(other.missed_windows)
        return self


def _to_entry(record: TimerEntryRecord) -> TimerEntry:
    return TimerEntry(
        id=record.id,
        run_id=record.run_id,
        step_id=record.step_id,
        due_at=ensure_utc(record.due_at),  # type: ignore[arg-type]
    )


class TimerScheduler:
    """Owns timer rows and turns due ones into ``TimerFired`` events.

    Each due entry is claimed by deleting it in its own transaction; only
    the sweeper whose delete removed the row dispatches the event, so every
    entry fires at most once. A run whose event was lost between claim and
    dispatch still shows ``waiting_for=time_gap`` and is re-fired by
    :meth:`reconcile` once it is overdue by more than the grace window.
    """

    def __init__(
        self,
        db: DatabaseManager,
        runs: RunStore,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the timer scheduler.

        Args:
            db: Database manager owning the timer table
            runs: Run store used by the reconciliation sweeps
            config: Scheduler configuration
            clock: Source of the current time (defaults to UTC now)
        """
        self.db = db
        self.runs = runs
        self.config = config or SchedulerConfig()
        self._clock = clock or utcnow
        self._engine: ExecutionEngine | None = None

    def bind(self, engine: ExecutionEngine) -> None:
        """Attach the engine that receives fired timers."""
        self._engine = engine

    @property
    def engine(self) -> ExecutionEngine:
        if self._engine is None:
            raise RuntimeError("TimerScheduler is not bound to an execution engine")
        return self._engine

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def schedule(self, session: Session, run_id: str, step_id: str, due_at: datetime) -> None:
        """Persist a wake-up inside the caller's transaction."""
        session.add(
            TimerEntryRecord(
                run_id=run_id, step_id=step_id, due_at=due_at, created_at=self._clock()
            )
        )
        logger.debug("Timer scheduled for run %s step %s at %s", run_id, step_id, due_at)

    def cancel(self, session: Session, run_id: str) -> int:
        """Remove every pending wake-up of a run inside the caller's transaction."""
        result = session.execute(delete(TimerEntryRecord).where(TimerEntryRecord.run_id == run_id))
        return result.rowcount or 0

    def pending_for(self, run_id: str) -> list[TimerEntry]:
        with self.db.session() as session:
            records = session.scalars(
                select(TimerEntryRecord)
                .where(TimerEntryRecord.run_id == run_id)
                .order_by(TimerEntryRecord.due_at)
            ).all()
            return [_to_entry(record) for record in records]

    def due(self, now: datetime | None = None) -> list[TimerEntry]:
        """Entries due at ``now``, oldest first, up to the sweep batch size."""
        now = now or self._clock()
        with self.db.session() as session:
            records = session.scalars(
                select(TimerEntryRecord)
                .where(TimerEntryRecord.due_at <= now)
                .order_by(TimerEntryRecord.due_at, TimerEntryRecord.id)
                .limit(self.config.sweep_batch_size)
            ).all()
            return [_to_entry(record) for record in records]

    def _claim(self, entry: TimerEntry) -> bool:
        with self.db.session() as session:
            result = session.execute(
                delete(TimerEntryRecord).where(TimerEntryRecord.id == entry.id)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Claim and fire every due timer.

        Late timers are honoured immediately; lateness beyond the configured
        threshold is reported as a missed window, never as an error.
        """
        now = now or self._clock()
        report = SweepReport()
        threshold = self.config.late_threshold_seconds

        for entry in self.due(now):
            if not self._claim(entry):
                report.skipped += 1
                continue

            if (now - entry.due_at).total_seconds() > threshold:
                missed = SchedulerMissedWindow(entry.run_id, entry.due_at, now)
                report.missed_windows.append(missed)
                logger.warning(str(missed))

            try:
                self.engine.handle_event(entry.run_id, TimerFired(entry.step_id, entry.due_at))
                report.fired.append(entry.run_id)
            except Exception as e:
                report.errors[entry.run_id] = str(e)
                logger.error(f"Failed to fire timer for run {entry.run_id}: {e}", exc_info=True)

        if report.total:
            logger.info(
                f"Timer sweep fired {len(report.fired)} timer(s), "
                f"{len(report.errors)} error(s), {len(report.missed_windows)} late"
            )
        return report

    def reconcile(self, now: datetime | None = None) -> SweepReport:
        """Recover production runs whose progress was interrupted.

        Runs stuck on a time gap with no pending timer are re-fired. Runs
        parked on a send whose outcome was never recorded are redelivered.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.config.reconcile_grace_seconds)
        report = SweepReport()

        for run in self.runs.list_overdue_time_gaps(cutoff, self.config.sweep_batch_size):
            if run.current_step_id is None or run.wait_until is None:
                continue
            logger.warning(
                "Run %s overdue since %s without a timer; re-firing", run.id, run.wait_until
            )
            try:
                self.engine.handle_event(run.id, TimerFired(run.current_step_id, run.wait_until))
                report.fired.append(run.id)
            except Exception as e:
                report.errors[run.id] = str(e)
                logger.error(f"Failed to reconcile run {run.id}: {e}", exc_info=True)

        for run in self.runs.list_stalled_deliveries(cutoff, self.config.sweep_batch_size):
            try:
                self.engine.redeliver(run.id)
                report.redelivered.append(run.id)
            except Exception as e:
                report.errors[run.id] = str(e)
                logger.error(f"Failed to redeliver run {run.id}: {e}", exc_info=True)

        return report

    def expire_stale_replies(self, now: datetime | None = None) -> list[str]:
        """Fail runs that waited on a reply for longer than the reply timeout.

        Returns:
            Ids of the runs that were failed
        """
        timeout = self.config.reply_timeout_seconds
        if not timeout:
            return []

        now = now or self._clock()
        cutoff = now - timedelta(seconds=timeout)
        expired: list[str] = []

        for run in self.runs.list_stale_waits(cutoff, self.config.sweep_batch_size):
            try:
                if self.engine.expire_wait(run.id, REPLY_TIMEOUT_ERROR, cutoff):
                    expired.append(run.id)
            except Exception as e:
                logger.error(f"Failed to expire run {run.id}: {e}", exc_info=True)

        if expired:
            logger.info(f"Expired {len(expired)} run(s) waiting longer than {timeout}s for a reply")
        return expired

    def poll(self) -> SweepReport:
        """One scheduler tick: sweep, reconcile, expire stale replies."""
        now = self._clock()
        report = self.sweep(now)
        report.merge(self.reconcile(now))
        self.expire_stale_replies(now)
        return report
