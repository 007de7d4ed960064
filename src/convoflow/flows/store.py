"""Persistent store for authored automations, their steps and snapshots."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.database import DatabaseManager
from ..core.exceptions import AutomationNotFound, ValidationError
from ..core.logger import get_logger
from ..core.orm import AutomationRecord, FlowSnapshotRecord, StepRecord, ensure_utc, utcnow
from .models import Automation, AutomationDraft, AutomationStatus, FlowSnapshot, Step, TriggerType
from .validation import ValidatedFlow, validate_steps

logger = get_logger("flows.store")

DeactivationHook = Callable[[str, str], Any]


class FlowStore:
    """CRUD for automations backed by SQLAlchemy.

    The store validates every step graph before it is persisted and takes an
    immutable snapshot whenever an automation becomes active or an active
    automation's steps change. Runs resolve steps through their snapshot, so
    edits never reach in-flight runs.

    Leaving the ``active`` status or deleting an automation fires the
    registered deactivation hooks after the change is committed.
    """

    def __init__(
        self,
        db: DatabaseManager,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the flow store.

        Args:
            db: Database manager owning the tables
            clock: Source of the current time (defaults to UTC now)
        """
        self.db = db
        self._clock = clock or utcnow
        self._deactivation_hooks: list[DeactivationHook] = []

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def add_deactivation_hook(self, hook: DeactivationHook) -> None:
        """Register ``hook(automation_id, reason)`` for deactivation and deletion."""
        self._deactivation_hooks.append(hook)

    def _fire_deactivation(self, automation_id: str, reason: str) -> None:
        for hook in self._deactivation_hooks:
            try:
                hook(automation_id, reason)
            except Exception as e:
                logger.error(
                    f"Deactivation hook failed for automation {automation_id}: {e}",
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_draft(data: AutomationDraft | dict[str, Any]) -> AutomationDraft:
        if isinstance(data, AutomationDraft):
            return data
        return AutomationDraft.model_validate(data)

    @staticmethod
    def _step_from_record(record: StepRecord) -> Step:
        return Step(
            id=record.step_id,
            type=record.type,
            position=record.position,
            config=dict(record.config or {}),
            next_step_id=record.next_step_id,
            is_start=record.is_start,
        )

    def _load_steps(self, session: Session, automation_id: str) -> list[Step]:
        records = session.scalars(
            select(StepRecord)
            .where(StepRecord.automation_id == automation_id)
            .order_by(StepRecord.position, StepRecord.step_id)
        ).all()
        return [self._step_from_record(record) for record in records]

    def _to_automation(self, session: Session, record: AutomationRecord) -> Automation:
        return Automation(
            id=record.id,
            name=record.name,
            description=record.description,
            channel_id=record.channel_id,
            trigger=record.trigger,
            trigger_config=dict(record.trigger_config or {}),
            status=record.status,
            execution_count=record.execution_count,
            last_executed_at=ensure_utc(record.last_executed_at),
            current_snapshot_id=record.current_snapshot_id,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
            steps=self._load_steps(session, record.id),
        )

    @staticmethod
    def _snapshot_from_record(record: FlowSnapshotRecord) -> FlowSnapshot:
        return FlowSnapshot(
            id=record.id,
            automation_id=record.automation_id,
            version=record.version,
            entry_step_id=record.entry_step_id,
            steps=tuple(Step.model_validate(step) for step in record.steps),
            created_at=ensure_utc(record.created_at),
        )

    @staticmethod
    def _get_record(session: Session, automation_id: str) -> AutomationRecord:
        record = session.get(AutomationRecord, automation_id)
        if record is None:
            raise AutomationNotFound(automation_id)
        return record

    @staticmethod
    def _replace_steps(session: Session, automation_id: str, steps: tuple[Step, ...]) -> None:
        for existing in session.scalars(
            select(StepRecord).where(StepRecord.automation_id == automation_id)
        ).all():
            session.delete(existing)
        session.flush()
        for step in steps:
            session.add(
                StepRecord(
                    automation_id=automation_id,
                    step_id=step.id,
                    type=step.type.value,
                    position=step.position,
                    config=step.config,
                    next_step_id=step.next_step_id,
                    is_start=step.is_start,
                )
            )

    def _take_snapshot(
        self, session: Session, automation_id: str, flow: ValidatedFlow
    ) -> FlowSnapshotRecord:
        """Persist an immutable copy of a validated graph."""
        if flow.entry_step_id is None:
            raise ValidationError("automation must have at least one step to be activated")

        current = session.scalar(
            select(func.max(FlowSnapshotRecord.version)).where(
                FlowSnapshotRecord.automation_id == automation_id
            )
        )
        record = FlowSnapshotRecord(
            id=str(uuid.uuid4()),
            automation_id=automation_id,
            version=(current or 0) + 1,
            entry_step_id=flow.entry_step_id,
            steps=[step.model_dump(mode="json") for step in flow.steps],
            created_at=self._clock(),
        )
        session.add(record)
        session.flush()
        logger.info(
            f"Snapshot v{record.version} taken for automation {automation_id} "
            f"({len(flow.steps)} steps)"
        )
        return record

    # ------------------------------------------------------------------
    # Automations
    # ------------------------------------------------------------------

    def create_automation(self, data: AutomationDraft | dict[str, Any]) -> Automation:
        """Create an automation from an editor payload.

        Args:
            data: Automation fields and optional step list

        Returns:
            The stored automation

        Raises:
            ValidationError: If the payload or its step graph is invalid
        """
        draft = self._coerce_draft(data)
        if not draft.name or not draft.name.strip():
            raise ValidationError("automation name is required")

        status = draft.status or AutomationStatus.INACTIVE
        flow = validate_steps(draft.steps or [], require_steps=status == AutomationStatus.ACTIVE)
        automation_id = draft.id or str(uuid.uuid4())
        now = self._clock()

        with self.db.session() as session:
            if session.get(AutomationRecord, automation_id) is not None:
                raise ValidationError(f"automation id '{automation_id}' already exists")

            record = AutomationRecord(
                id=automation_id,
                name=draft.name.strip(),
                description=draft.description,
                channel_id=draft.channel_id,
                trigger=(draft.trigger or TriggerType.NEW_CONVERSATION).value,
                trigger_config=draft.trigger_config or {},
                status=status.value,
                execution_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.flush()
            self._replace_steps(session, automation_id, flow.steps)

            if status == AutomationStatus.ACTIVE:
                snapshot = self._take_snapshot(session, automation_id, flow)
                record.current_snapshot_id = snapshot.id

            session.flush()
            logger.info(f"Created automation {automation_id} ({record.name}) as {status.value}")
            return self._to_automation(session, record)

    def update_automation(
        self, automation_id: str, data: AutomationDraft | dict[str, Any]
    ) -> Automation:
        """Update metadata, status and/or the step list of an automation.

        Fields absent from ``data`` are left untouched. When the automation is
        (or becomes) active, a new snapshot is taken from the saved steps.

        Raises:
            AutomationNotFound: If the automation does not exist
            ValidationError: If the new step graph is invalid
        """
        draft = self._coerce_draft(data)
        provided = draft.model_fields_set
        deactivated = False

        with self.db.session() as session:
            record = self._get_record(session, automation_id)
            previous = AutomationStatus(record.status)
            target = draft.status or previous

            if "name" in provided:
                if not draft.name or not draft.name.strip():
                    raise ValidationError("automation name is required")
                record.name = draft.name.strip()
            if "description" in provided:
                record.description = draft.description
            if "channel_id" in provided:
                record.channel_id = draft.channel_id
            if draft.trigger is not None:
                record.trigger = draft.trigger.value
            if draft.trigger_config is not None:
                record.trigger_config = draft.trigger_config

            steps_changed = draft.steps is not None
            source = draft.steps if steps_changed else self._load_steps(session, automation_id)
            flow = validate_steps(source or [], require_steps=target == AutomationStatus.ACTIVE)

            if steps_changed:
                self._replace_steps(session, automation_id, flow.steps)

            if target == AutomationStatus.ACTIVE and (
                steps_changed or previous != AutomationStatus.ACTIVE
            ):
                snapshot = self._take_snapshot(session, automation_id, flow)
                record.current_snapshot_id = snapshot.id

            record.status = target.value
            record.updated_at = self._clock()
            deactivated = previous == AutomationStatus.ACTIVE and target != AutomationStatus.ACTIVE

            session.flush()
            automation = self._to_automation(session, record)

        logger.info(f"Updated automation {automation_id}")
        if deactivated:
            self._fire_deactivation(automation_id, f"automation_{target.value}")
        return automation

    def get_automation(self, automation_id: str) -> Automation:
        """Get an automation with its steps.

        Raises:
            AutomationNotFound: If the automation does not exist
        """
        with self.db.session() as session:
            return self._to_automation(session, self._get_record(session, automation_id))

    def list_automations(
        self,
        status: AutomationStatus | str | None = None,
        trigger: TriggerType | str | None = None,
    ) -> list[Automation]:
        """List automations, optionally filtered by status and trigger."""
        query = select(AutomationRecord)
        if status is not None:
            query = query.where(AutomationRecord.status == AutomationStatus(status).value)
        if trigger is not None:
            query = query.where(AutomationRecord.trigger == TriggerType(trigger).value)
        query = query.order_by(AutomationRecord.created_at, AutomationRecord.id)

        with self.db.session() as session:
            return [self._to_automation(session, record) for record in session.scalars(query)]

    def list_steps(self, automation_id: str) -> list[Step]:
        """Steps of an automation ordered by position, ties broken by id."""
        with self.db.session() as session:
            self._get_record(session, automation_id)
            return self._load_steps(session, automation_id)

    def set_status(self, automation_id: str, status: AutomationStatus | str) -> Automation:
        """Change the lifecycle status.

        Activation validates the current steps and takes a snapshot; leaving
        ``active`` fires the deactivation hooks.
        """
        return self.update_automation(
            automation_id, AutomationDraft(status=AutomationStatus(status))
        )

    def toggle(self, automation_id: str) -> Automation:
        """Flip between active and inactive; a paused automation becomes active."""
        current = self.get_automation(automation_id)
        target = (
            AutomationStatus.INACTIVE
            if current.status == AutomationStatus.ACTIVE
            else AutomationStatus.ACTIVE
        )
        return self.set_status(automation_id, target)

    def delete_automation(self, automation_id: str) -> None:
        """Delete an automation after cancelling its runs through the hooks.

        Raises:
            AutomationNotFound: If the automation does not exist
        """
        with self.db.session() as session:
            self._get_record(session, automation_id)

        self._fire_deactivation(automation_id, "automation_deleted")

        with self.db.session() as session:
            record = self._get_record(session, automation_id)
            for step in session.scalars(
                select(StepRecord).where(StepRecord.automation_id == automation_id)
            ).all():
                session.delete(step)
            for snapshot in session.scalars(
                select(FlowSnapshotRecord).where(FlowSnapshotRecord.automation_id == automation_id)
            ).all():
                session.delete(snapshot)
            session.delete(record)

        logger.info(f"Deleted automation {automation_id}")

    def record_execution(self, automation_id: str, at: datetime | None = None) -> None:
        """Count a production run start against the automation."""
        with self.db.session() as session:
            record = self._get_record(session, automation_id)
            record.execution_count = (record.execution_count or 0) + 1
            record.last_executed_at = at or self._clock()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_snapshot(self, snapshot_id: str) -> FlowSnapshot | None:
        with self.db.session() as session:
            record = session.get(FlowSnapshotRecord, snapshot_id)
            return self._snapshot_from_record(record) if record else None

    def latest_snapshot(self, automation_id: str) -> FlowSnapshot | None:
        """Highest-version snapshot of an automation, if any."""
        with self.db.session() as session:
            record = session.scalars(
                select(FlowSnapshotRecord)
                .where(FlowSnapshotRecord.automation_id == automation_id)
                .order_by(FlowSnapshotRecord.version.desc())
                .limit(1)
            ).first()
            return self._snapshot_from_record(record) if record else None

    def snapshot_for_test(self, automation_id: str) -> FlowSnapshot:
        """Snapshot matching the automation's current steps.

        Reuses the latest snapshot when it already matches; otherwise a new
        one is taken without changing the snapshot production runs start on.

        Raises:
            AutomationNotFound: If the automation does not exist
            ValidationError: If the current steps cannot run
        """
        with self.db.session() as session:
            self._get_record(session, automation_id)
            flow = validate_steps(self._load_steps(session, automation_id), require_steps=True)

            latest = session.scalars(
                select(FlowSnapshotRecord)
                .where(FlowSnapshotRecord.automation_id == automation_id)
                .order_by(FlowSnapshotRecord.version.desc())
                .limit(1)
            ).first()
            current_steps = [step.model_dump(mode="json") for step in flow.steps]
            if latest is not None and latest.steps == current_steps:
                return self._snapshot_from_record(latest)

            return self._snapshot_from_record(self._take_snapshot(session, automation_id, flow))
