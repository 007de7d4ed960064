"""Events consumed and effects produced by the run state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from ..core.exceptions import SendError
from ..runs.models import LogStatus, Run


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Start:
    """Begin executing a freshly created run at its entry step."""


@dataclass(frozen=True)
class InboundMessage:
    """A contact message routed to one waiting run."""

    text: str
    received_at: datetime
    message_id: str | None = None
    button_id: str | None = None


@dataclass(frozen=True)
class TimerFired:
    """A time gap elapsed for ``step_id``."""

    step_id: str
    due_at: datetime


@dataclass(frozen=True)
class Cancel:
    """Stop the run without sending anything further."""

    reason: str = "cancelled"


@dataclass(frozen=True)
class MessageDelivered:
    """The gateway accepted the message of ``step_id``."""

    step_id: str
    message_id: str | None = None
    attempts: int = 1


@dataclass(frozen=True)
class DeliveryFailed:
    """The message of ``step_id`` could not be delivered."""

    step_id: str
    error: SendError
    attempts: int = 1

    @property
    def reason(self) -> str:
        return f"{self.error.error_class}: {self.error}"


Event = Union[Start, InboundMessage, TimerFired, Cancel, MessageDelivered, DeliveryFailed]


# ----------------------------------------------------------------------
# Effects
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class SendMessage:
    """Outbound message of the step a run is parked on.

    The run stays on ``step_id`` until the delivery outcome is applied back
    to it as a :class:`MessageDelivered` or :class:`DeliveryFailed` event.
    """

    run_id: str
    conversation_id: str
    step_id: str
    kind: str
    text: str | None = None
    template_id: str | None = None
    template_variables: dict[str, str] = field(default_factory=dict)
    buttons: tuple[dict[str, str], ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScheduleTimer:
    run_id: str
    step_id: str
    due_at: datetime


@dataclass(frozen=True)
class CancelTimers:
    run_id: str


Effect = Union[SendMessage, ScheduleTimer, CancelTimers]


@dataclass(frozen=True)
class StepTrace:
    """What happened to one step during a transition; becomes a log entry."""

    step_id: str | None
    step_type: str | None
    status: LogStatus
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class Transition:
    """Result of applying one event to one run."""

    run: Run
    effects: tuple[Effect, ...] = ()
    trace: tuple[StepTrace, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.effects or self.trace)

    @property
    def sends(self) -> list[SendMessage]:
        return [effect for effect in self.effects if isinstance(effect, SendMessage)]
