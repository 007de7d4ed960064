"""Exception hierarchy for the automation runtime."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


class ConvoflowError(Exception):
    """Base exception for automation runtime errors."""

    pass


@dataclass(frozen=True)
class ValidationIssue:
    """A single problem found while validating a flow."""

    message: str
    step_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"stepId": self.step_id, "message": self.message}

    def __str__(self) -> str:
        if self.step_id:
            return f"step '{self.step_id}': {self.message}"
        return self.message


class ValidationError(ConvoflowError):
    """Raised when an authored flow is malformed.

    Rejected at authoring time; a flow that fails validation never reaches
    the execution engine.
    """

    def __init__(self, issues: list[ValidationIssue] | str) -> None:
        """Initialize the exception.

        Args:
            issues: Issues found, or a single message
        """
        if isinstance(issues, str):
            issues = [ValidationIssue(issues)]
        self.issues = list(issues)
        super().__init__("; ".join(str(issue) for issue in self.issues))

    @property
    def step_ids(self) -> list[str]:
        """Ids of the offending steps, in report order."""
        return [issue.step_id for issue in self.issues if issue.step_id]


class AutomationNotFound(ConvoflowError):
    """Raised when an automation id is unknown."""

    def __init__(self, automation_id: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"Automation not found: {automation_id}")


class RunNotFound(ConvoflowError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class RunAlreadyActive(ConvoflowError):
    """Raised when a live run already exists for the automation and conversation."""

    def __init__(self, automation_id: str, conversation_id: str) -> None:
        self.automation_id = automation_id
        self.conversation_id = conversation_id
        super().__init__(
            f"Automation {automation_id} is already running in conversation {conversation_id}"
        )


class SendError(ConvoflowError):
    """Base class for outbound delivery failures."""

    retryable = False

    def __init__(self, message: str, error_class: str = "unknown") -> None:
        """Initialize the exception.

        Args:
            message: Error message
            error_class: Gateway error classification
        """
        self.error_class = error_class
        super().__init__(message)


class TransientSendError(SendError):
    """Rate limit or network failure; retried with backoff."""

    retryable = True


class TerminalSendError(SendError):
    """Policy, approval or recipient failure; the run fails without retry."""

    retryable = False


class ConcurrencyConflict(ConvoflowError):
    """Raised when a run changed between read and conditional write."""

    def __init__(self, run_id: str, expected_version: int) -> None:
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(
            f"Run {run_id} was modified concurrently (expected version {expected_version})"
        )


class SchedulerMissedWindow(ConvoflowError):
    """Describes a timer that fired late, typically after downtime.

    Lateness is not an error: the timer is honoured immediately. Instances
    are collected on sweep reports and logged, never raised to callers.
    """

    def __init__(self, run_id: str, due_at: datetime, fired_at: datetime) -> None:
        self.run_id = run_id
        self.due_at = due_at
        self.fired_at = fired_at
        super().__init__(
            f"Timer for run {run_id} due at {due_at.isoformat()} fired "
            f"{self.lateness_seconds:.1f}s late"
        )

    @property
    def lateness_seconds(self) -> float:
        return (self.fired_at - self.due_at).total_seconds()
