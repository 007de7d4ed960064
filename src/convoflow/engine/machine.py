"""Pure run state machine.

``transition`` maps (run, event) to a new run plus the effects to perform.
It never touches storage or the network, so the runner can recompute it
freely when an optimistic write loses a race.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from ..flows.models import (
    CustomReplyConfig,
    FlowSnapshot,
    KeywordCatchConfig,
    ReplyButton,
    SendTemplateConfig,
    Step,
    TimeGapConfig,
    UserReplyConfig,
)
from ..runs.models import LogStatus, Run, RunOutcome, WaitingFor
from .events import (
    Cancel,
    CancelTimers,
    DeliveryFailed,
    Effect,
    Event,
    InboundMessage,
    MessageDelivered,
    ScheduleTimer,
    SendMessage,
    Start,
    StepTrace,
    TimerFired,
    Transition,
)

MATCHED_KEYWORD_VARIABLE = "matchedKeyword"

_DIGITS = re.compile(r"^\d+$")


def match_button(text: str, buttons: list[ReplyButton]) -> ReplyButton | None:
    """Map a free-text reply onto one of the offered buttons.

    Tries an exact (case-insensitive) title, then a 1-based option number,
    then a partial title match in either direction.
    """
    if not buttons:
        return None
    wanted = text.strip().lower()
    if not wanted:
        return None

    for button in buttons:
        if button.text.lower() == wanted:
            return button

    if _DIGITS.match(wanted):
        index = int(wanted) - 1
        if 0 <= index < len(buttons):
            return buttons[index]

    for button in buttons:
        title = button.text.lower()
        if wanted in title or title in wanted:
            return button
    return None


def match_keywords(text: str, config: KeywordCatchConfig) -> str | None:
    """Return the matched keyword (or keyword list for ``all``), else None."""
    lowered = text.strip().lower()
    keywords = config.keywords

    if config.match_type == "exact":
        for keyword in keywords:
            if keyword.lower() == lowered:
                return keyword
        return None

    if config.match_type == "all":
        if all(keyword.lower() in lowered for keyword in keywords):
            return ", ".join(keywords)
        return None

    for keyword in keywords:
        if keyword.lower() in lowered:
            return keyword
    return None


class _Builder:
    """Accumulates the effects and log traces of one transition."""

    def __init__(self, run: Run, snapshot: FlowSnapshot, now: datetime, collapse_waits: bool):
        self.run = run
        self.snapshot = snapshot
        self.now = now
        self.collapse_waits = collapse_waits
        self.effects: list[Effect] = []
        self.trace: list[StepTrace] = []

    def build(self) -> Transition:
        return Transition(run=self.run, effects=tuple(self.effects), trace=tuple(self.trace))

    def log(
        self,
        step: Step | None,
        status: LogStatus,
        error: str | None = None,
        **detail: object,
    ) -> None:
        self.trace.append(
            StepTrace(
                step_id=step.id if step else self.run.current_step_id,
                step_type=step.type.value if step else None,
                status=status,
                detail=dict(detail),
                error=error,
            )
        )

    def clear_wait(self) -> None:
        self.run.waiting_for = WaitingFor.NONE
        self.run.wait_until = None

    def finish(self, outcome: RunOutcome, error: str | None = None) -> None:
        self.clear_wait()
        self.run.outcome = outcome
        self.run.completed_at = self.now
        self.run.last_advanced_at = self.now
        self.run.last_error = error

    def fail(self, step: Step | None, error: str, **detail: object) -> None:
        self.finish(RunOutcome.FAILED, error)
        self.effects.append(CancelTimers(self.run.id))
        self.log(step, LogStatus.FAILED, error=error, **detail)

    def park_for_delivery(self, step: Step) -> None:
        """Stop on a sending step until its delivery outcome comes back."""
        send = message_for(self.run, step)
        if send is None:
            raise TypeError(f"step '{step.id}' of type {step.type.value} sends no message")
        self.run.waiting_for = WaitingFor.DELIVERY
        self.effects.append(send)

    def resume(self, step_id: str | None) -> None:
        """Run from ``step_id`` to the next suspension point or terminal state."""
        remaining = len(self.snapshot.steps) + 1

        while True:
            if step_id is None:
                self.finish(RunOutcome.COMPLETED)
                return

            remaining -= 1
            step = self.snapshot.step(step_id)
            if step is None or remaining < 0:
                self.fail(step, f"step '{step_id}' cannot be resolved in snapshot")
                return

            self.run.current_step_id = step.id
            self.run.last_advanced_at = self.now
            settings = step.settings

            if isinstance(settings, (CustomReplyConfig, SendTemplateConfig, UserReplyConfig)):
                self.park_for_delivery(step)
                return

            if isinstance(settings, TimeGapConfig):
                if self.collapse_waits:
                    self.log(
                        step,
                        LogStatus.COMPLETED,
                        delay_seconds=settings.delay_seconds,
                        collapsed=True,
                    )
                    step_id = step.next_step_id
                    continue
                due_at = self.now + timedelta(seconds=settings.delay_seconds)
                self.run.waiting_for = WaitingFor.TIME_GAP
                self.run.wait_until = due_at
                self.effects.append(ScheduleTimer(self.run.id, step.id, due_at))
                self.log(step, LogStatus.WAITING, due_at=due_at.isoformat())
                return

            if isinstance(settings, KeywordCatchConfig):
                self.run.waiting_for = WaitingFor.KEYWORD_CATCH
                self.log(step, LogStatus.WAITING, keywords=list(settings.keywords))
                return

    def on_delivered(self, step: Step, event: MessageDelivered) -> None:
        settings = step.settings
        self.clear_wait()
        self.run.last_advanced_at = self.now

        if isinstance(settings, UserReplyConfig):
            self.run.waiting_for = WaitingFor.USER_REPLY
            self.log(
                step,
                LogStatus.WAITING,
                question=settings.question,
                message_id=event.message_id,
            )
            return

        if isinstance(settings, CustomReplyConfig):
            self.log(
                step,
                LogStatus.COMPLETED,
                message=settings.message,
                message_id=event.message_id,
            )
        elif isinstance(settings, SendTemplateConfig):
            self.log(
                step,
                LogStatus.COMPLETED,
                template_id=settings.template_id,
                message_id=event.message_id,
            )
        self.resume(step.next_step_id)

    def on_reply(self, step: Step, settings: UserReplyConfig, event: InboundMessage) -> None:
        button = None
        if event.button_id is not None:
            button = next((b for b in settings.buttons if b.id == event.button_id), None)
        if button is None:
            button = match_button(event.text, settings.buttons)

        if button is not None:
            self.run.variables[settings.save_as] = button.text
            self.run.variables[f"{settings.save_as}_button_id"] = button.id
        else:
            self.run.variables[settings.save_as] = event.text

        self.run.last_message_id = event.message_id
        self.clear_wait()
        self.log(
            step,
            LogStatus.RESUMED,
            reply=event.text,
            button_id=button.id if button else None,
        )
        self.resume(step.next_step_id)

    def on_keyword(self, step: Step, settings: KeywordCatchConfig, event: InboundMessage) -> bool:
        matched = match_keywords(event.text, settings)
        if matched is None:
            return False

        self.run.variables[MATCHED_KEYWORD_VARIABLE] = matched
        self.run.last_message_id = event.message_id
        self.clear_wait()
        self.log(step, LogStatus.RESUMED, matched_keyword=matched, action=settings.action)

        if settings.action != "continue":
            self.finish(RunOutcome.COMPLETED)
            return True

        branch_key = settings.keywords[0] if settings.match_type == "all" else matched
        target = settings.branch_for(branch_key)
        self.resume(target if target is not None else step.next_step_id)
        return True


def message_for(run: Run, step: Step) -> SendMessage | None:
    """The message a sending step delivers for ``run``, or None for other steps."""
    settings = step.settings
    common = {
        "run_id": run.id,
        "conversation_id": run.conversation_id,
        "step_id": step.id,
        "variables": dict(run.variables),
    }
    if isinstance(settings, CustomReplyConfig):
        return SendMessage(kind="text", text=settings.message, **common)
    if isinstance(settings, SendTemplateConfig):
        return SendMessage(
            kind="template",
            template_id=settings.template_id,
            template_variables=dict(settings.variables),
            **common,
        )
    if isinstance(settings, UserReplyConfig):
        return SendMessage(
            kind="question",
            text=settings.question,
            buttons=tuple(button.model_dump() for button in settings.buttons),
            **common,
        )
    return None


def pending_message(run: Run, snapshot: FlowSnapshot) -> SendMessage | None:
    """Rebuild the undelivered message of a run parked on a sending step."""
    if run.is_terminal or run.waiting_for != WaitingFor.DELIVERY:
        return None
    step = snapshot.step(run.current_step_id)
    if step is None:
        return None
    return message_for(run, step)


def transition(
    run: Run,
    event: Event,
    snapshot: FlowSnapshot,
    now: datetime,
    collapse_waits: bool = False,
) -> Transition:
    """Apply ``event`` to ``run`` and return the new state with its effects.

    The input run is never mutated. Events that do not apply to the run's
    current state (terminal run, stale timer, duplicate message, message
    while not waiting on one, delivery outcome for another step) yield an
    unchanged run and no effects.

    A run stops on every sending step and emits exactly one
    :class:`SendMessage`; it only moves past the step once a
    :class:`MessageDelivered` event for that step is applied.

    Args:
        run: Current run state
        event: Event to apply
        snapshot: Step graph the run resolves against
        now: Current time
        collapse_waits: Resolve time gaps immediately (test runs)

    Returns:
        Transition with the new run, effects to perform and log traces
    """
    unchanged = Transition(run=run)
    if run.is_terminal:
        return unchanged

    builder = _Builder(run.clone(), snapshot, now, collapse_waits)

    if isinstance(event, Cancel):
        step = snapshot.step(run.current_step_id)
        builder.finish(RunOutcome.CANCELLED, event.reason)
        builder.effects.append(CancelTimers(run.id))
        builder.log(step, LogStatus.CANCELLED, reason=event.reason)
        return builder.build()

    if isinstance(event, Start):
        if run.waiting_for != WaitingFor.NONE:
            return unchanged
        builder.resume(run.current_step_id or snapshot.entry_step_id)
        return builder.build()

    step = snapshot.step(run.current_step_id)
    if step is None:
        return unchanged

    if isinstance(event, (MessageDelivered, DeliveryFailed)):
        if run.waiting_for != WaitingFor.DELIVERY or event.step_id != run.current_step_id:
            return unchanged
        if isinstance(event, DeliveryFailed):
            builder.fail(
                step,
                event.reason,
                error_class=event.error.error_class,
                retryable=event.error.retryable,
                attempts=event.attempts,
            )
        else:
            builder.on_delivered(step, event)
        return builder.build()

    if isinstance(event, TimerFired):
        if run.waiting_for != WaitingFor.TIME_GAP or event.step_id != run.current_step_id:
            return unchanged
        builder.clear_wait()
        builder.effects.append(CancelTimers(run.id))
        builder.log(step, LogStatus.RESUMED, due_at=event.due_at.isoformat())
        builder.resume(step.next_step_id)
        return builder.build()

    if isinstance(event, InboundMessage):
        if event.message_id is not None and event.message_id == run.last_message_id:
            return unchanged
        settings = step.settings
        if run.waiting_for == WaitingFor.USER_REPLY and isinstance(settings, UserReplyConfig):
            builder.on_reply(step, settings, event)
            return builder.build()
        if run.waiting_for == WaitingFor.KEYWORD_CATCH and isinstance(
            settings, KeywordCatchConfig
        ):
            if builder.on_keyword(step, settings, event):
                return builder.build()
        return unchanged

    raise TypeError(f"Unsupported event: {event!r}")
