"""Routes conversation lifecycle events to the execution engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.exceptions import ConvoflowError, RunAlreadyActive
from ..core.logger import get_logger, log_exception
from ..core.orm import utcnow
from ..engine.engine import ExecutionEngine
from ..engine.events import InboundMessage
from ..flows.models import AutomationStatus, TriggerType
from ..flows.store import FlowStore
from ..runs.store import RunStore

logger = get_logger("dispatch")


@dataclass(frozen=True)
class ConversationStarted:
    """A new conversation was opened on a channel."""

    conversation_id: str
    contact_id: str | None = None
    channel_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageReceived:
    """A contact sent a message into a conversation."""

    conversation_id: str
    text: str
    received_at: datetime | None = None
    message_id: str | None = None
    button_id: str | None = None


@dataclass
class DispatchReport:
    """Runs touched by one dispatched event."""

    started: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def matched(self) -> bool:
        return bool(self.started or self.resumed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": list(self.started),
            "resumed": list(self.resumed),
            "skipped": dict(self.skipped),
            "errors": dict(self.errors),
        }


class TriggerDispatcher:
    """Starts runs for new conversations and forwards replies to waiting runs.

    A failure while handling one automation or run is logged and recorded on
    the report; it never stops the others from being handled.
    """

    def __init__(
        self,
        flows: FlowStore,
        runs: RunStore,
        engine: ExecutionEngine,
        clock: Callable[[], datetime] | None = None,
    ):
        self.flows = flows
        self.runs = runs
        self.engine = engine
        self._clock = clock or utcnow

    def on_conversation_started(self, event: ConversationStarted) -> DispatchReport:
        """Start every active ``new_conversation`` automation scoped to the channel."""
        report = DispatchReport()
        automations = self.flows.list_automations(
            status=AutomationStatus.ACTIVE, trigger=TriggerType.NEW_CONVERSATION
        )

        trigger_data: dict[str, Any] = dict(event.payload)
        if event.channel_id is not None:
            trigger_data.setdefault("channelId", event.channel_id)

        for automation in automations:
            if not automation.matches_channel(event.channel_id):
                continue
            if self.runs.find_active(automation.id, event.conversation_id) is not None:
                report.skipped[automation.id] = "already_running"
                continue

            try:
                run = self.engine.start_run(
                    automation,
                    event.conversation_id,
                    event.contact_id,
                    trigger_data=trigger_data,
                )
            except RunAlreadyActive:
                report.skipped[automation.id] = "already_running"
                continue
            except ConvoflowError as e:
                report.errors[automation.id] = str(e)
                logger.error(
                    f"Failed to start automation {automation.id} "
                    f"for conversation {event.conversation_id}: {e}"
                )
                continue
            except Exception as e:
                report.errors[automation.id] = str(e)
                log_exception(logger, e, f"Unexpected error starting automation {automation.id}")
                continue

            report.started.append(run.id)

        if report.started:
            logger.info(
                f"Conversation {event.conversation_id} started {len(report.started)} run(s)"
            )
        return report

    def on_message_received(self, event: MessageReceived) -> DispatchReport:
        """Forward a message to each run of the conversation that waits on one."""
        report = DispatchReport()
        inbound = InboundMessage(
            text=event.text,
            received_at=event.received_at or self._clock(),
            message_id=event.message_id,
            button_id=event.button_id,
        )

        for run in self.runs.list_waiting_for_message(event.conversation_id):
            try:
                before = run.version
                result = self.engine.handle_event(run.id, inbound)
            except Exception as e:
                report.errors[run.id] = str(e)
                logger.error(f"Failed to deliver message to run {run.id}: {e}", exc_info=True)
                continue

            if result.version != before:
                report.resumed.append(run.id)
            else:
                report.skipped[run.id] = "no_match"

        if not report.matched:
            logger.debug("Message in conversation %s matched no waiting run", event.conversation_id)
        return report
