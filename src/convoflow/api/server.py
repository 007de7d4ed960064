"""FastAPI surface for the editor and the conversation layer."""

from __future__ import annotations

import asyncio
import hmac
import threading
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from ..core.config import ApiServerConfig
from ..core.exceptions import (
    AutomationNotFound,
    ConcurrencyConflict,
    RunAlreadyActive,
    RunNotFound,
    ValidationError,
)
from ..core.logger import get_logger
from ..dispatch.dispatcher import ConversationStarted, MessageReceived, TriggerDispatcher
from ..engine.engine import ExecutionEngine
from ..flows.models import AutomationDraft
from ..flows.store import FlowStore
from ..harness import TestHarness
from ..runs.store import RunStore
from .schemas import (
    CancelRequest,
    CancelView,
    ConversationStartedRequest,
    DispatchView,
    ExecuteRequest,
    MessageReceivedRequest,
    RunDetail,
    RunLogView,
    RunView,
    StatusUpdate,
    TestRunRequest,
    TestRunView,
    dump,
)

logger = get_logger("api")


class ApiServer:
    """Serve the automation API and forward conversation events to the dispatcher.

    Routes:
    - Automation CRUD, status changes, deletion, test and manual runs under /automations
    - Run inspection and runs waiting on a contact under /runs
    - Cancelling the runs of a conversation under /conversations
    - Conversation lifecycle ingestion under /events
    - Poll loop status under /scheduler
    """

    def __init__(
        self,
        config: ApiServerConfig,
        flows: FlowStore,
        runs: RunStore,
        dispatcher: TriggerDispatcher,
        harness: TestHarness,
        engine: ExecutionEngine,
        scheduler_status: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API server configuration
            flows: Flow store backing the editor routes
            runs: Run store backing the inspection routes
            dispatcher: Receiver of ingested conversation events
            harness: Test harness behind the test route
            engine: Engine behind the manual run and cancel routes
            scheduler_status: Provider of the poll loop status
        """
        self._config = config
        self.flows = flows
        self.runs = runs
        self.dispatcher = dispatcher
        self.harness = harness
        self.engine = engine
        self._scheduler_status = scheduler_status
        self._app = FastAPI(title="convoflow")
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

        self._register_error_handlers()
        self._create_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    # ------------------------------------------------------------------
    # FastAPI setup
    # ------------------------------------------------------------------
    def _register_error_handlers(self) -> None:
        @self._app.exception_handler(ValidationError)
        async def validation_failed(request: Request, exc: ValidationError) -> JSONResponse:
            return JSONResponse(
                status_code=422,
                content={
                    "detail": str(exc),
                    "issues": [issue.to_dict() for issue in exc.issues],
                },
            )

        @self._app.exception_handler(AutomationNotFound)
        async def automation_missing(request: Request, exc: AutomationNotFound) -> JSONResponse:
            return JSONResponse(status_code=404, content={"detail": str(exc)})

        @self._app.exception_handler(RunNotFound)
        async def run_missing(request: Request, exc: RunNotFound) -> JSONResponse:
            return JSONResponse(status_code=404, content={"detail": str(exc)})

        @self._app.exception_handler(ConcurrencyConflict)
        async def conflict(request: Request, exc: ConcurrencyConflict) -> JSONResponse:
            return JSONResponse(status_code=409, content={"detail": str(exc)})

        @self._app.exception_handler(RunAlreadyActive)
        async def already_running(request: Request, exc: RunAlreadyActive) -> JSONResponse:
            return JSONResponse(status_code=409, content={"detail": str(exc)})

    def _verify_api_key(self, x_api_key: str | None = Header(default=None)) -> None:
        expected = self._config.api_key
        if not expected:
            return
        if not x_api_key or not hmac.compare_digest(x_api_key, expected):
            raise HTTPException(status_code=401, detail="Invalid API key")

    def _create_routes(self) -> None:
        @self._app.get("/healthz")
        def health() -> dict[str, str]:
            return {"status": "ok"}

        router = APIRouter(dependencies=[Depends(self._verify_api_key)])

        @router.post("/automations", status_code=201)
        def create_automation(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
            automation = self.flows.create_automation(self._draft(payload))
            return dump(automation)

        @router.get("/automations")
        def list_automations(
            status: str | None = Query(default=None),
            trigger: str | None = Query(default=None),
        ) -> list[dict[str, Any]]:
            try:
                automations = self.flows.list_automations(status=status, trigger=trigger)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            return [dump(automation) for automation in automations]

        @router.get("/automations/{automation_id}")
        def get_automation(automation_id: str) -> dict[str, Any]:
            return dump(self.flows.get_automation(automation_id))

        @router.put("/automations/{automation_id}")
        def update_automation(
            automation_id: str, payload: dict[str, Any] = Body(...)
        ) -> dict[str, Any]:
            return dump(self.flows.update_automation(automation_id, self._draft(payload)))

        @router.get("/automations/{automation_id}/steps")
        def list_steps(automation_id: str) -> list[dict[str, Any]]:
            return [dump(step) for step in self.flows.list_steps(automation_id)]

        @router.post("/automations/{automation_id}/toggle")
        def toggle(automation_id: str) -> dict[str, Any]:
            return dump(self.flows.toggle(automation_id))

        @router.put("/automations/{automation_id}/status")
        def set_status(automation_id: str, body: StatusUpdate) -> dict[str, Any]:
            return dump(self.flows.set_status(automation_id, body.status))

        @router.delete("/automations/{automation_id}")
        def delete_automation(automation_id: str) -> dict[str, Any]:
            self.flows.delete_automation(automation_id)
            return {"status": "deleted", "id": automation_id}

        @router.post("/automations/{automation_id}/test")
        def test_automation(automation_id: str, body: TestRunRequest) -> dict[str, Any]:
            summary = self.harness.run(
                automation_id,
                body.conversation_id,
                body.contact_id,
                replies=body.replies,
            )
            return dump(TestRunView.model_validate(summary.to_dict()))

        @router.post("/automations/{automation_id}/execute", status_code=201)
        def execute_automation(automation_id: str, body: ExecuteRequest) -> dict[str, Any]:
            run = self.engine.start_run(
                automation_id,
                body.conversation_id,
                body.contact_id,
                trigger_data={"trigger": "manual", **body.trigger_data},
            )
            return dump(RunView.model_validate(run.to_dict()))

        @router.get("/automations/{automation_id}/runs")
        def list_runs(
            automation_id: str,
            limit: int = Query(default=50, ge=1, le=500),
            include_tests: bool = Query(default=True, alias="includeTests"),
        ) -> list[dict[str, Any]]:
            self.flows.get_automation(automation_id)
            runs = self.runs.list_for_automation(automation_id, limit, include_tests)
            return [dump(RunView.model_validate(run.to_dict())) for run in runs]

        @router.get("/runs/pending")
        def pending_runs(
            conversation_id: str | None = Query(default=None, alias="conversationId"),
            limit: int = Query(default=100, ge=1, le=500),
        ) -> list[dict[str, Any]]:
            runs = self.runs.list_pending(conversation_id, limit)
            return [dump(RunView.model_validate(run.to_dict())) for run in runs]

        @router.get("/runs/{run_id}")
        def get_run(run_id: str) -> dict[str, Any]:
            run = self.runs.require(run_id)
            logs = [
                RunLogView.model_validate(entry.to_dict()) for entry in self.runs.logs_for(run_id)
            ]
            return dump(RunDetail(run=RunView.model_validate(run.to_dict()), logs=logs))

        @router.post("/conversations/{conversation_id}/cancel")
        def cancel_conversation(
            conversation_id: str, body: CancelRequest | None = None
        ) -> dict[str, Any]:
            reason = body.reason if body else "cancelled"
            cancelled = self.engine.cancel_runs_for_conversation(conversation_id, reason)
            return dump(CancelView(conversation_id=conversation_id, cancelled=cancelled))

        if self._scheduler_status is not None:
            provider = self._scheduler_status

            @router.get("/scheduler")
            def scheduler_status() -> dict[str, Any]:
                return provider()

        @router.post("/events/conversation-started")
        def conversation_started(body: ConversationStartedRequest) -> dict[str, Any]:
            report = self.dispatcher.on_conversation_started(
                ConversationStarted(
                    conversation_id=body.conversation_id,
                    contact_id=body.contact_id,
                    channel_id=body.channel_id,
                    payload=body.payload,
                )
            )
            return dump(DispatchView.model_validate(report.to_dict()))

        @router.post("/events/message-received")
        def message_received(body: MessageReceivedRequest) -> dict[str, Any]:
            report = self.dispatcher.on_message_received(
                MessageReceived(
                    conversation_id=body.conversation_id,
                    text=body.text,
                    received_at=body.received_at,
                    message_id=body.message_id,
                    button_id=body.button_id,
                )
            )
            return dump(DispatchView.model_validate(report.to_dict()))

        self._app.include_router(router)

    @staticmethod
    def _draft(payload: dict[str, Any]) -> AutomationDraft:
        try:
            return AutomationDraft.model_validate(payload)
        except PydanticValidationError as exc:
            messages = []
            for error in exc.errors():
                loc = ".".join(str(x) for x in error["loc"])
                messages.append(f"{loc}: {error['msg']}")
            raise ValidationError("; ".join(messages)) from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread or not self._config.enabled:
            return

        config = uvicorn.Config(
            self._app,
            host=self._config.host,
            port=self._config.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)

        def _run() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                server = self._server
                if server is None:
                    logger.error("API server thread started without a uvicorn server instance")
                    return
                loop.run_until_complete(server.serve())
            finally:
                loop.close()

        self._thread = threading.Thread(target=_run, name="convoflow-api", daemon=True)
        self._thread.start()
        logger.info("API server listening on http://%s:%s", self._config.host, self._config.port)

    def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
