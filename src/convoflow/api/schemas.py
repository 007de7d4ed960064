"""Request and response bodies of the HTTP API.

Bodies use camelCase on the wire; snake_case is accepted on input too.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..flows.models import AutomationStatus


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatusUpdate(ApiModel):
    status: AutomationStatus


class TestRunRequest(ApiModel):
    conversation_id: str = Field(..., min_length=1)
    contact_id: str | None = None
    replies: list[str] | None = None


class ConversationStartedRequest(ApiModel):
    conversation_id: str = Field(..., min_length=1)
    contact_id: str | None = None
    channel_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class MessageReceivedRequest(ApiModel):
    conversation_id: str = Field(..., min_length=1)
    text: str
    received_at: datetime | None = None
    message_id: str | None = None
    button_id: str | None = None


class ExecuteRequest(ApiModel):
    conversation_id: str = Field(..., min_length=1)
    contact_id: str | None = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(ApiModel):
    reason: str = Field(default="cancelled", min_length=1)


class CancelView(ApiModel):
    conversation_id: str
    cancelled: list[str] = Field(default_factory=list)


class RunView(ApiModel):
    id: str
    automation_id: str
    conversation_id: str
    contact_id: str | None = None
    snapshot_id: str
    current_step_id: str | None = None
    waiting_for: str
    wait_until: datetime | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    last_advanced_at: datetime
    completed_at: datetime | None = None
    version: int
    outcome: str
    last_error: str | None = None
    is_test: bool = False


class RunLogView(ApiModel):
    id: int | None = None
    step_id: str | None = None
    step_type: str | None = None
    status: str
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime | None = None


class RunDetail(ApiModel):
    run: RunView
    logs: list[RunLogView] = Field(default_factory=list)


class TestRunView(ApiModel):
    run_id: str
    automation_id: str
    conversation_id: str
    outcome: str
    waiting_for: str
    current_step_id: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    steps_executed: list[dict[str, Any]] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    last_error: str | None = None


class DispatchView(ApiModel):
    started: list[str] = Field(default_factory=list)
    resumed: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)


def dump(model: BaseModel) -> dict[str, Any]:
    """Serialize a model with camelCase keys."""
    return model.model_dump(mode="json", by_alias=True)
