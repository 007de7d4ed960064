"""Runtime that wires configuration, storage, engine, scheduler and API."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from types import FrameType
from typing import Any

from .actions.executor import ActionExecutor
from .actions.gateway import HttpMessagingGateway, MessagingGateway, RecordingGateway
from .actions.templates import StaticTemplateCatalog, TemplateCatalog
from .api.server import ApiServer
from .core.config import ConvoflowConfig
from .core.database import DatabaseManager
from .core.logger import get_logger, setup_logging
from .core.orm import utcnow
from .dispatch.dispatcher import TriggerDispatcher
from .engine.engine import ExecutionEngine
from .flows.store import FlowStore
from .harness import TestHarness
from .runs.store import RunStore
from .scheduler.scheduler import TaskScheduler
from .scheduler.timers import SweepReport, TimerScheduler

logger = get_logger("runtime")

POLL_JOB_ID = "convoflow-timer-poll"


class AutomationRuntime:
    """Everything needed to run automations in one process.

    Example:
        ```python
        runtime = AutomationRuntime.from_config("convoflow.yaml")
        runtime.start()
        runtime.wait()
        ```
    """

    def __init__(
        self,
        config: ConvoflowConfig | None = None,
        gateway: MessagingGateway | None = None,
        catalog: TemplateCatalog | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        """Build the component graph.

        Args:
            config: Runtime configuration (defaults to environment settings)
            gateway: Messaging gateway (HTTP when ``gateway.base_url`` is set,
                otherwise an in-process recorder)
            catalog: Template catalog (defaults to the configured templates)
            clock: Source of the current time
            sleep: Backoff sleep used between delivery retries
        """
        self.config = config or ConvoflowConfig()
        self._clock = clock or utcnow

        self.db = DatabaseManager(self.config.database.url, echo=self.config.database.echo)
        if self.config.database.create_tables:
            self.db.create_tables()

        if gateway is None:
            if self.config.gateway.base_url:
                gateway = HttpMessagingGateway(self.config.gateway)
            else:
                logger.warning("No gateway.base_url configured; messages are only recorded")
                gateway = RecordingGateway()
        self.gateway = gateway
        self.catalog = catalog or StaticTemplateCatalog(self.config.templates)

        executor_kwargs: dict[str, Any] = {}
        if sleep is not None:
            executor_kwargs["sleep"] = sleep
        self.executor = ActionExecutor(
            self.gateway,
            self.catalog,
            self.config.delivery,
            self.config.engine.missing_variable_policy,
            **executor_kwargs,
        )

        self.flows = FlowStore(self.db, clock=self._clock)
        self.runs = RunStore(self.db)
        self.timers = TimerScheduler(self.db, self.runs, self.config.scheduler, clock=self._clock)
        self.engine = ExecutionEngine(
            self.db,
            self.flows,
            self.runs,
            self.timers,
            self.executor,
            self.config.engine,
            clock=self._clock,
        )
        self.dispatcher = TriggerDispatcher(self.flows, self.runs, self.engine, clock=self._clock)
        self.harness = TestHarness(self.flows, self.runs, self.engine, clock=self._clock)
        self.api = ApiServer(
            self.config.api,
            self.flows,
            self.runs,
            self.dispatcher,
            self.harness,
            self.engine,
            scheduler_status=self.scheduler_status,
        )

        self.scheduler: TaskScheduler | None = None
        self._shutdown_event = threading.Event()
        self._running = False

    @classmethod
    def from_config(cls, config_path: str | Path | None = None, **kwargs: Any) -> AutomationRuntime:
        """Create a runtime from a YAML/JSON file, or the environment when no path is given."""
        config = ConvoflowConfig.load(config_path)
        setup_logging(config.logging)
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def recover(self) -> SweepReport:
        """Fire timers and redeliver sends that were due while the process was down."""
        report = self.timers.sweep()
        report.merge(self.timers.reconcile())
        if report.total or report.missed_windows:
            logger.info(
                f"Recovery fired {len(report.fired)} timer(s), "
                f"redelivered {len(report.redelivered)} message(s), "
                f"{len(report.missed_windows)} past their window"
            )
        return report

    def scheduler_status(self) -> dict[str, Any]:
        """Status of the poll loop, or ``disabled`` when it is not running here."""
        if self.scheduler is None:
            return {"status": "disabled", "running": False, "total_jobs": 0, "jobs": []}
        return self.scheduler.get_scheduler_status()

    def start(self, serve_api: bool = True) -> None:
        """Recover due timers, start the poll loop and (optionally) the API."""
        if self._running:
            return

        self.recover()

        if self.config.scheduler.enabled:
            self.scheduler = TaskScheduler(self.config.scheduler)
            self.scheduler.add_job(
                self.timers.poll,
                job_id=POLL_JOB_ID,
                seconds=self.config.scheduler.poll_interval_seconds,
            )
            self.scheduler.start()

        if serve_api:
            self.api.start()

        self._running = True
        logger.info("Automation runtime started")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.api.stop()
        if self.scheduler:
            self.scheduler.shutdown(wait=True)
            self.scheduler = None
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()
        self.db.dispose()
        self._shutdown_event.set()
        logger.info("Automation runtime stopped")

    def wait(self) -> None:
        """Block until SIGINT/SIGTERM, then stop."""

        def handle_signal(sig: int, frame: FrameType | None) -> None:
            logger.info("Received signal %s, initiating shutdown", sig)
            self._shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, handle_signal)
            except (OSError, ValueError) as exc:
                logger.warning("Unable to register handler for signal %s: %s", sig, exc)

        try:
            while self._running and not self._shutdown_event.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received; shutting down")
        finally:
            self.stop()

    @property
    def is_running(self) -> bool:
        return self._running
