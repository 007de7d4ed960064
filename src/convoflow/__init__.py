"""convoflow: conversational automation runtime.

Runs authored automations (ordered graphs of typed steps) against live
conversations:
- Durable runs that survive restarts and days-long waits
- Database-backed timers swept by a background poll loop
- Template and text delivery with retry classification
- An HTTP API for the editor and the conversation layer

Example:
    ```python
    from convoflow import AutomationRuntime

    runtime = AutomationRuntime.from_config("convoflow.yaml")
    runtime.start()
    runtime.wait()
    ```
"""

from importlib.metadata import PackageNotFoundError, version

from .app import AutomationRuntime
from .core import ConvoflowConfig, get_logger, setup_logging
from .dispatch import ConversationStarted, MessageReceived, TriggerDispatcher
from .engine import ExecutionEngine
from .flows import FlowStore
from .harness import TestHarness, TestRunSummary
from .runs import Run, RunOutcome, RunStore, WaitingFor

__all__ = [
    "__version__",
    "AutomationRuntime",
    "ConvoflowConfig",
    "ConversationStarted",
    "ExecutionEngine",
    "FlowStore",
    "MessageReceived",
    "Run",
    "RunOutcome",
    "RunStore",
    "TestHarness",
    "TestRunSummary",
    "TriggerDispatcher",
    "WaitingFor",
    "get_logger",
    "setup_logging",
]

try:  # pragma: no cover - best-effort during development
    __version__ = version("convoflow")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
