"""Execution engine: read, compute, conditionally write, then act.

Every event goes through the same cycle. The runner loads the run, asks the
pure state machine for the transition, and writes the new state together
with its timer changes and log entries, conditioned on the version it read.
A lost race re-reads and recomputes. Messages are delivered only after the
commit, so a recomputed transition never sends twice. A run stops on each
sending step and only moves past it once the delivery outcome is committed
as a further event.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..actions.executor import ActionExecutor, ActionResult
from ..core.config import EngineConfig
from ..core.database import DatabaseManager
from ..core.exceptions import ConcurrencyConflict, ConvoflowError, RunNotFound, ValidationError
from ..core.logger import get_logger, log_exception
from ..core.orm import utcnow
from ..flows.models import Automation, FlowSnapshot
from ..flows.store import FlowStore
from ..runs.models import LogStatus, Run, RunLogEntry, RunOutcome, WaitingFor
from ..runs.store import RunStore
from .events import (
    Cancel,
    CancelTimers,
    DeliveryFailed,
    Event,
    MessageDelivered,
    ScheduleTimer,
    SendMessage,
    Start,
    StepTrace,
    Transition,
)
from .machine import pending_message, transition

if TYPE_CHECKING:
    from ..scheduler.timers import TimerScheduler

logger = get_logger("engine")

Compute = Callable[[Run, datetime], "Transition | None"]
DeliveryListener = Callable[[SendMessage, ActionResult], Any]


class ExecutionEngine:
    """Advances runs in response to events.

    Example:
        ```python
        engine = ExecutionEngine(db, flows, runs, timers, executor)
        run = engine.start_run(automation, "conv-1", "contact-1")
        engine.handle_event(run.id, InboundMessage("Bob", received_at=now))
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        flows: FlowStore,
        runs: RunStore,
        timers: TimerScheduler,
        executor: ActionExecutor,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the engine and register it with its collaborators.

        Args:
            db: Database manager shared with the stores
            flows: Flow store; its deactivation hooks cancel runs here
            runs: Run store
            timers: Timer scheduler; fired timers are routed back here
            executor: Action executor for send effects
            config: Engine configuration
            clock: Source of the current time (defaults to UTC now)
        """
        self.db = db
        self.flows = flows
        self.runs = runs
        self.timers = timers
        self.executor = executor
        self.config = config or EngineConfig()
        self._clock = clock or utcnow
        self._snapshots: dict[str, FlowSnapshot] = {}
        self._lock = threading.Lock()
        self._delivery_listeners: list[DeliveryListener] = []

        timers.bind(self)
        flows.add_deactivation_hook(self.cancel_runs_for_automation)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self, snapshot_id: str) -> FlowSnapshot:
        """Resolve a snapshot; snapshots are immutable so they are cached."""
        with self._lock:
            cached = self._snapshots.get(snapshot_id)
        if cached is not None:
            return cached

        snapshot = self.flows.get_snapshot(snapshot_id)
        if snapshot is None:
            raise ConvoflowError(f"Flow snapshot not found: {snapshot_id}")
        with self._lock:
            self._snapshots[snapshot_id] = snapshot
        return snapshot

    # ------------------------------------------------------------------
    # Delivery listeners
    # ------------------------------------------------------------------

    def add_delivery_listener(self, listener: DeliveryListener) -> None:
        """Register ``listener(send, result)``, called after every delivery attempt."""
        with self._lock:
            self._delivery_listeners.append(listener)

    def remove_delivery_listener(self, listener: DeliveryListener) -> None:
        with self._lock:
            if listener in self._delivery_listeners:
                self._delivery_listeners.remove(listener)

    def _notify_delivery(self, send: SendMessage, result: ActionResult) -> None:
        with self._lock:
            listeners = list(self._delivery_listeners)
        for listener in listeners:
            try:
                listener(send, result)
            except Exception as e:
                logger.error(f"Delivery listener failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Commit cycle
    # ------------------------------------------------------------------

    def _log_entries(
        self, run_id: str, trace: tuple[StepTrace, ...], now: datetime
    ) -> list[RunLogEntry]:
        return [
            RunLogEntry(
                run_id=run_id,
                status=item.status,
                step_id=item.step_id,
                step_type=item.step_type,
                detail=item.detail,
                error=item.error,
                created_at=now,
            )
            for item in trace
        ]

    def _commit(self, run_id: str, compute: Compute) -> tuple[Run, Transition | None]:
        """Apply ``compute`` to the stored run under optimistic concurrency.

        ``compute`` may run several times; it must not have side effects.

        Returns:
            The stored run and the committed transition (None for a no-op)

        Raises:
            RunNotFound: If the run does not exist
            ConcurrencyConflict: If every attempt lost the race
        """
        expected = 0
        for attempt in range(1, self.config.max_conflict_retries + 1):
            now = self._clock()
            try:
                with self.db.session() as session:
                    current = self.runs.load(session, run_id)
                    if current is None:
                        raise RunNotFound(run_id)
                    expected = current.version

                    result = compute(current, now)
                    if result is None or (
                        result.run == current and not result.effects and not result.trace
                    ):
                        return current, None

                    saved = self.runs.save(session, result.run, expected)
                    for effect in result.effects:
                        if isinstance(effect, ScheduleTimer):
                            self.timers.schedule(
                                session, effect.run_id, effect.step_id, effect.due_at
                            )
                        elif isinstance(effect, CancelTimers):
                            self.timers.cancel(session, effect.run_id)
                    self.runs.append_logs(session, self._log_entries(run_id, result.trace, now))
                return saved, result
            except ConcurrencyConflict:
                logger.debug(
                    "Version conflict on run %s (attempt %s/%s)",
                    run_id,
                    attempt,
                    self.config.max_conflict_retries,
                )

        logger.warning(
            f"Giving up on run {run_id} after {self.config.max_conflict_retries} conflicts"
        )
        raise ConcurrencyConflict(run_id, expected)

    def _apply(self, event: Event) -> Compute:
        def compute(current: Run, now: datetime) -> Transition | None:
            if current.is_terminal:
                return None
            snapshot = self.snapshot(current.snapshot_id)
            return transition(current, event, snapshot, now, collapse_waits=current.is_test)

        return compute

    def _deliver(self, send: SendMessage) -> MessageDelivered | DeliveryFailed:
        """Send one message and turn the result into the event that settles it."""
        try:
            result = self.executor.execute(send)
        except Exception as e:
            log_exception(logger, e, f"Unexpected error delivering step {send.step_id}")
            result = ActionResult(success=False, error_class="internal_error", error=str(e))
        self._notify_delivery(send, result)

        error = result.as_error()
        if error is None:
            return MessageDelivered(send.step_id, result.message_id, result.attempts)
        logger.error(
            f"Delivery of step {send.step_id} for run {send.run_id} failed: "
            f"{error.error_class}: {error}"
        )
        return DeliveryFailed(send.step_id, error, result.attempts)

    def _deliver_pending(self, run: Run, sends: list[SendMessage]) -> Run:
        """Deliver committed messages one at a time, committing each outcome.

        The run is parked on the sending step while the message is in flight,
        so neither a crash nor a concurrent timer sweep can see it past a step
        whose message has not gone out.
        """
        pending = list(sends)
        while pending:
            send = pending.pop(0)
            outcome = self._deliver(send)
            run, committed = self._commit(run.id, self._apply(outcome))
            if committed is None:
                logger.info(
                    "Run %s left step %s before its delivery was recorded",
                    run.id,
                    send.step_id,
                )
                break
            pending.extend(committed.sends)
        return run

    def _advance(self, run_id: str, event: Event) -> Run:
        saved, committed = self._commit(run_id, self._apply(event))
        if committed is None:
            logger.debug("Event %s ignored by run %s", type(event).__name__, run_id)
            return saved
        return self._deliver_pending(saved, committed.sends)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start_run(
        self,
        automation: Automation | str,
        conversation_id: str,
        contact_id: str | None = None,
        is_test: bool = False,
        trigger_data: dict[str, Any] | None = None,
        snapshot: FlowSnapshot | None = None,
    ) -> Run:
        """Create a run at the entry step and execute until it suspends or ends.

        Args:
            automation: Automation (or its id) to run
            conversation_id: Conversation the run is attached to
            contact_id: Contact on the other end of the conversation
            is_test: Flag the run as a test run (waits collapse, not counted)
            trigger_data: Payload of the triggering event, seeded as variables
            snapshot: Snapshot to run against (defaults to the current one)

        Returns:
            The run after its first advance

        Raises:
            RunAlreadyActive: If a live run of the same kind already exists
            ValidationError: If the automation has no runnable snapshot
        """
        if isinstance(automation, str):
            automation = self.flows.get_automation(automation)

        if snapshot is None:
            if not automation.current_snapshot_id:
                raise ValidationError(f"automation '{automation.id}' has never been activated")
            snapshot = self.snapshot(automation.current_snapshot_id)

        now = self._clock()
        payload = dict(trigger_data or {})
        variables: dict[str, Any] = {"conversationId": conversation_id, "contactId": contact_id}
        variables.update(payload)

        run = Run(
            id=str(uuid.uuid4()),
            automation_id=automation.id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            snapshot_id=snapshot.id,
            started_at=now,
            last_advanced_at=now,
            variables=variables,
            trigger_data=payload,
            is_test=is_test,
        )
        with self.db.session() as session:
            self.runs.insert(session, run)

        if not is_test:
            self.flows.record_execution(automation.id, now)

        logger.info(
            f"Started {'test ' if is_test else ''}run {run.id} of automation {automation.id} "
            f"in conversation {conversation_id}"
        )
        return self._advance(run.id, Start())

    def handle_event(self, run_id: str, event: Event) -> Run:
        """Apply an event to a run and perform the resulting effects.

        Events that do not apply to the run's state are ignored.

        Raises:
            RunNotFound: If the run does not exist
            ConcurrencyConflict: If the run kept changing under every retry
        """
        return self._advance(run_id, event)

    def cancel_run(self, run_id: str, reason: str = "cancelled") -> Run:
        """Cancel one run and drop its pending timers."""
        return self._advance(run_id, Cancel(reason))

    def cancel_runs_for_automation(
        self, automation_id: str, reason: str = "cancelled"
    ) -> list[str]:
        """Cancel every live run of an automation.

        Returns:
            Ids of the runs that were cancelled
        """
        cancelled = self._cancel_all(self.runs.list_active_for_automation(automation_id), reason)
        if cancelled:
            logger.info(
                f"Cancelled {len(cancelled)} run(s) of automation {automation_id} ({reason})"
            )
        return cancelled

    def cancel_runs_for_conversation(
        self, conversation_id: str, reason: str = "cancelled"
    ) -> list[str]:
        """Cancel every live run attached to a conversation, test runs included.

        Returns:
            Ids of the runs that were cancelled
        """
        cancelled = self._cancel_all(
            self.runs.list_active_for_conversation(conversation_id), reason
        )
        if cancelled:
            logger.info(
                f"Cancelled {len(cancelled)} run(s) in conversation {conversation_id} ({reason})"
            )
        return cancelled

    def _cancel_all(self, runs: list[Run], reason: str) -> list[str]:
        cancelled: list[str] = []
        for run in runs:
            try:
                result = self.cancel_run(run.id, reason)
            except ConvoflowError as e:
                logger.error(f"Failed to cancel run {run.id}: {e}")
                continue
            if result.outcome == RunOutcome.CANCELLED:
                cancelled.append(run.id)
        return cancelled

    def redeliver(self, run_id: str) -> Run:
        """Send again the message a run is parked on and record the outcome.

        Used for runs whose delivery was interrupted before its outcome was
        committed. Runs that are not parked on a send are returned unchanged.

        Raises:
            RunNotFound: If the run does not exist
        """
        run = self.runs.require(run_id)
        if run.is_terminal or run.waiting_for != WaitingFor.DELIVERY:
            return run
        send = pending_message(run, self.snapshot(run.snapshot_id))
        if send is None:
            return run
        logger.warning(f"Redelivering step {send.step_id} of run {run_id}")
        return self._deliver_pending(run, [send])

    def expire_wait(self, run_id: str, error: str, cutoff: datetime) -> bool:
        """Fail a run still waiting on a message since before ``cutoff``.

        Returns:
            True if the run was failed
        """

        def compute(current: Run, now: datetime) -> Transition | None:
            if current.is_terminal or not current.waiting_for.expects_message:
                return None
            if current.last_advanced_at >= cutoff:
                return None
            snapshot = self.snapshot(current.snapshot_id)
            step = snapshot.step(current.current_step_id)
            failed = current.clone(
                outcome=RunOutcome.FAILED,
                last_error=error,
                completed_at=now,
                last_advanced_at=now,
                waiting_for=WaitingFor.NONE,
                wait_until=None,
            )
            trace = StepTrace(
                step_id=current.current_step_id,
                step_type=step.type.value if step else None,
                status=LogStatus.FAILED,
                detail={"waiting_for": current.waiting_for.value},
                error=error,
            )
            return Transition(run=failed, effects=(CancelTimers(run_id),), trace=(trace,))

        _, committed = self._commit(run_id, compute)
        return committed is not None
