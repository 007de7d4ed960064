"""Run state and execution log records."""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunOutcome(str, Enum):
    """Lifecycle outcome of a run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunOutcome.RUNNING


class WaitingFor(str, Enum):
    """What a suspended run is waiting on."""

    NONE = "none"
    DELIVERY = "delivery"
    USER_REPLY = "user_reply"
    TIME_GAP = "time_gap"
    KEYWORD_CATCH = "keyword_catch"

    @property
    def expects_message(self) -> bool:
        return self in (WaitingFor.USER_REPLY, WaitingFor.KEYWORD_CATCH)


class LogStatus(str, Enum):
    """Status of a single execution log entry."""

    COMPLETED = "completed"
    WAITING = "waiting"
    RESUMED = "resumed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Run:
    """One execution of an automation inside one conversation."""

    id: str
    automation_id: str
    conversation_id: str
    snapshot_id: str
    started_at: datetime
    last_advanced_at: datetime
    contact_id: str | None = None
    current_step_id: str | None = None
    waiting_for: WaitingFor = WaitingFor.NONE
    wait_until: datetime | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    trigger_data: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None
    version: int = 1
    outcome: RunOutcome = RunOutcome.RUNNING
    last_error: str | None = None
    is_test: bool = False
    last_message_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal

    @property
    def active_key(self) -> str | None:
        """Uniqueness key held while the run is live."""
        if self.is_terminal:
            return None
        suffix = ":test" if self.is_test else ""
        return f"{self.automation_id}:{self.conversation_id}{suffix}"

    def clone(self, **changes: Any) -> Run:
        """Deep copy with ``changes`` applied; the original is left untouched."""
        duplicate = dataclasses.replace(
            self,
            variables=copy.deepcopy(self.variables),
            trigger_data=copy.deepcopy(self.trigger_data),
        )
        for name, value in changes.items():
            setattr(duplicate, name, value)
        return duplicate

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "conversation_id": self.conversation_id,
            "contact_id": self.contact_id,
            "snapshot_id": self.snapshot_id,
            "current_step_id": self.current_step_id,
            "waiting_for": self.waiting_for.value,
            "wait_until": self.wait_until.isoformat() if self.wait_until else None,
            "variables": dict(self.variables),
            "trigger_data": dict(self.trigger_data),
            "started_at": self.started_at.isoformat(),
            "last_advanced_at": self.last_advanced_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "version": self.version,
            "outcome": self.outcome.value,
            "last_error": self.last_error,
            "is_test": self.is_test,
        }


@dataclass
class RunLogEntry:
    """Step-level record of what a run did."""

    run_id: str
    status: LogStatus
    step_id: str | None = None
    step_type: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "step_type": self.step_type,
            "status": self.status.value,
            "detail": dict(self.detail),
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
