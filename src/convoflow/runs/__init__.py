"""Run state, execution logs and their store."""

from .models import LogStatus, Run, RunLogEntry, RunOutcome, WaitingFor
from .store import RunStore

__all__ = ["LogStatus", "Run", "RunLogEntry", "RunOutcome", "RunStore", "WaitingFor"]
