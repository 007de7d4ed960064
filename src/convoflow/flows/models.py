"""Authored flow definitions: automations, steps and snapshots."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TriggerType(str, Enum):
    """Event class that starts a run."""

    NEW_CONVERSATION = "new_conversation"


class AutomationStatus(str, Enum):
    """Lifecycle status of an automation."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"


class StepType(str, Enum):
    """Variant set of flow steps."""

    USER_REPLY = "user_reply"
    TIME_GAP = "time_gap"
    SEND_TEMPLATE = "send_template"
    CUSTOM_REPLY = "custom_reply"
    KEYWORD_CATCH = "keyword_catch"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ReplyButton(_CamelModel):
    """Quick-reply option offered with a question."""

    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class UserReplyConfig(_CamelModel):
    """Ask a question, then wait for the next inbound message."""

    question: str = Field(..., min_length=1, description="Text sent to the contact")
    save_as: str = Field(
        ...,
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Variable that receives the reply text",
    )
    buttons: list[ReplyButton] = Field(default_factory=list)


class TimeGapConfig(_CamelModel):
    """Suspend the run for a fixed interval."""

    delay_seconds: int = Field(..., ge=0)


class SendTemplateConfig(_CamelModel):
    """Send an approved template filled with captured variables."""

    template_id: str = Field(..., min_length=1)
    variables: dict[str, str] = Field(
        default_factory=dict,
        description="Slot name to value expression; other slots use the same-named variable",
    )


class CustomReplyConfig(_CamelModel):
    """Send literal text with {{variable}} substitution."""

    message: str = Field(..., min_length=1)


class KeywordCatchConfig(_CamelModel):
    """Gate that waits for a message containing one of the keywords."""

    keywords: list[str] = Field(..., min_length=1)
    action: str = Field(default="continue", min_length=1)
    match_type: Literal["any", "all", "exact"] = "any"
    branches: dict[str, str] = Field(
        default_factory=dict, description="Keyword to step id overriding next_step_id"
    )

    @field_validator("keywords")
    @classmethod
    def strip_keywords(cls, value: list[str]) -> list[str]:
        cleaned = [keyword.strip() for keyword in value]
        if any(not keyword for keyword in cleaned):
            raise ValueError("keywords must not be blank")
        return cleaned

    @model_validator(mode="after")
    def validate_branches(self) -> KeywordCatchConfig:
        known = {keyword.lower() for keyword in self.keywords}
        unknown = [key for key in self.branches if key.strip().lower() not in known]
        if unknown:
            raise ValueError(f"branches reference unknown keywords: {', '.join(unknown)}")
        return self

    def branch_for(self, keyword: str) -> str | None:
        """Override edge for a matched keyword, compared case-insensitively."""
        wanted = keyword.strip().lower()
        for key, target in self.branches.items():
            if key.strip().lower() == wanted:
                return target
        return None


StepConfig = (
    UserReplyConfig | TimeGapConfig | SendTemplateConfig | CustomReplyConfig | KeywordCatchConfig
)

STEP_CONFIG_MODELS: dict[StepType, type[_CamelModel]] = {
    StepType.USER_REPLY: UserReplyConfig,
    StepType.TIME_GAP: TimeGapConfig,
    StepType.SEND_TEMPLATE: SendTemplateConfig,
    StepType.CUSTOM_REPLY: CustomReplyConfig,
    StepType.KEYWORD_CATCH: KeywordCatchConfig,
}


class Step(_CamelModel):
    """One typed unit of work in a flow.

    ``config`` holds the raw mapping as authored; ``settings`` parses it into
    the model for the step's type.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str = Field(..., min_length=1)
    type: StepType
    position: int = 0
    config: dict[str, Any] = Field(default_factory=dict)
    next_step_id: str | None = None
    is_start: bool = False

    @property
    def settings(self) -> StepConfig:
        model = STEP_CONFIG_MODELS[self.type]
        return model.model_validate(self.config)  # type: ignore[return-value]

    def edges(self) -> list[str]:
        """Outgoing step ids: the default edge plus keyword overrides."""
        targets: list[str] = []
        if self.next_step_id:
            targets.append(self.next_step_id)
        if self.type == StepType.KEYWORD_CATCH:
            branches = self.config.get("branches") or {}
            if isinstance(branches, dict):
                targets.extend(str(target) for target in branches.values())
        return targets


class AutomationDraft(_CamelModel):
    """Create/update payload coming from the editor."""

    id: str | None = None
    name: str | None = None
    description: str | None = None
    channel_id: str | None = None
    trigger: TriggerType | None = None
    trigger_config: dict[str, Any] | None = None
    status: AutomationStatus | None = None
    steps: list[Step] | None = None


class Automation(_CamelModel):
    """An authored, reusable flow definition."""

    id: str
    name: str
    description: str | None = None
    channel_id: str | None = None
    trigger: TriggerType = TriggerType.NEW_CONVERSATION
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    status: AutomationStatus = AutomationStatus.INACTIVE
    execution_count: int = 0
    last_executed_at: datetime | None = None
    current_snapshot_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    steps: list[Step] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == AutomationStatus.ACTIVE

    def matches_channel(self, channel_id: str | None) -> bool:
        """True when the automation is scoped to ``channel_id`` or unscoped."""
        return self.channel_id is None or self.channel_id == channel_id


class FlowSnapshot(_CamelModel):
    """Immutable step graph that in-flight runs resolve against."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    automation_id: str
    version: int
    entry_step_id: str
    steps: tuple[Step, ...]
    created_at: datetime | None = None

    def step(self, step_id: str | None) -> Step | None:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
