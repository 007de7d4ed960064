"""Accelerated one-off runs for trying an automation from the editor."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .actions.executor import ActionResult
from .core.logger import get_logger
from .core.orm import utcnow
from .engine.engine import ExecutionEngine
from .engine.events import InboundMessage, SendMessage
from .flows.store import FlowStore
from .runs.models import Run
from .runs.store import RunStore

logger = get_logger("harness")


@dataclass
class TestRunSummary:
    """Outcome of a test run, returned synchronously to the caller."""

    __test__ = False

    run_id: str
    automation_id: str
    conversation_id: str
    outcome: str
    waiting_for: str
    current_step_id: str | None
    variables: dict[str, Any] = field(default_factory=dict)
    steps_executed: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "automation_id": self.automation_id,
            "conversation_id": self.conversation_id,
            "outcome": self.outcome,
            "waiting_for": self.waiting_for,
            "current_step_id": self.current_step_id,
            "variables": dict(self.variables),
            "steps_executed": list(self.steps_executed),
            "messages": list(self.messages),
            "last_error": self.last_error,
        }


class TestHarness:
    """Runs an automation against an explicit conversation outside the trigger path.

    Test runs behave exactly like production runs except that time gaps
    resolve immediately and the run is flagged ``is_test``: it is not counted
    in the automation's execution statistics and the reconciliation sweep
    ignores it. Scripted ``replies`` answer reply and keyword waits in order.
    """

    __test__ = False

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

    def run(
        self,
        automation_id: str,
        conversation_id: str,
        contact_id: str | None = None,
        replies: Sequence[str] | None = None,
    ) -> TestRunSummary:
        """Execute a test run and summarize it.

        Args:
            automation_id: Automation to test (active or not)
            conversation_id: Conversation to run against
            contact_id: Contact on the other end
            replies: Scripted inbound messages fed to waits in order

        Returns:
            Summary with outcome, captured variables, steps and sent messages

        Raises:
            AutomationNotFound: If the automation does not exist
            ValidationError: If its current steps cannot run
        """
        automation = self.flows.get_automation(automation_id)
        snapshot = self.flows.snapshot_for_test(automation_id)

        previous = self.runs.find_active(automation_id, conversation_id, is_test=True)
        if previous is not None:
            self.engine.cancel_run(previous.id, "superseded_by_test")

        delivered: list[tuple[str, dict[str, Any]]] = []

        def record(send: SendMessage, result: ActionResult) -> None:
            delivered.append(
                (
                    send.run_id,
                    {
                        "step_id": send.step_id,
                        "kind": send.kind,
                        "success": result.success,
                        "payload": result.payload,
                        "error_class": result.error_class,
                    },
                )
            )

        self.engine.add_delivery_listener(record)
        try:
            run = self.engine.start_run(
                automation,
                conversation_id,
                contact_id,
                is_test=True,
                trigger_data={"testMode": True},
                snapshot=snapshot,
            )
            run = self._feed_replies(run, replies or ())
        finally:
            self.engine.remove_delivery_listener(record)

        messages = [message for run_id, message in delivered if run_id == run.id]

        logger.info(
            f"Test run {run.id} of automation {automation_id} finished as {run.outcome.value}"
        )
        return self._summarize(run, messages)

    def _feed_replies(self, run: Run, replies: Sequence[str]) -> Run:
        for index, text in enumerate(replies):
            if run.is_terminal or not run.waiting_for.expects_message:
                break
            run = self.engine.handle_event(
                run.id,
                InboundMessage(
                    text=text,
                    received_at=self._clock(),
                    message_id=f"test-{run.id}-{index}",
                ),
            )
        return run

    def _summarize(self, run: Run, messages: list[dict[str, Any]]) -> TestRunSummary:
        steps = [
            {
                "step_id": entry.step_id,
                "step_type": entry.step_type,
                "status": entry.status.value,
                "error": entry.error,
            }
            for entry in self.runs.logs_for(run.id)
        ]
        return TestRunSummary(
            run_id=run.id,
            automation_id=run.automation_id,
            conversation_id=run.conversation_id,
            outcome=run.outcome.value,
            waiting_for=run.waiting_for.value,
            current_step_id=run.current_step_id,
            variables=dict(run.variables),
            steps_executed=steps,
            messages=messages,
            last_error=run.last_error,
        )
