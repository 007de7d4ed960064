"""Run state machine and the engine that commits and acts on it."""

from .engine import ExecutionEngine
from .events import (
    Cancel,
    CancelTimers,
    InboundMessage,
    ScheduleTimer,
    SendMessage,
    Start,
    TimerFired,
    Transition,
)
from .machine import match_button, match_keywords, transition

__all__ = [
    "Cancel",
    "CancelTimers",
    "ExecutionEngine",
    "InboundMessage",
    "ScheduleTimer",
    "SendMessage",
    "Start",
    "TimerFired",
    "Transition",
    "match_button",
    "match_keywords",
    "transition",
]
