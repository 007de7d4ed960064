"""Durable timers and the background poll loop that sweeps them."""

from .scheduler import JobStats, TaskScheduler
from .timers import SweepReport, TimerEntry, TimerScheduler

__all__ = ["JobStats", "SweepReport", "TaskScheduler", "TimerEntry", "TimerScheduler"]
