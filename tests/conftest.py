"""Shared fixtures: an in-memory runtime driven by a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from convoflow.actions.gateway import RecordingGateway
from convoflow.app import AutomationRuntime
from convoflow.core.config import (
    ApiServerConfig,
    ConvoflowConfig,
    DatabaseConfig,
    DeliveryConfig,
    RetryPolicyConfig,
    SchedulerConfig,
    TemplateConfig,
)

START = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def welcome_steps(delay_seconds: int = 60) -> list[dict[str, Any]]:
    """Greeting, name question, pause, then a templated follow-up."""
    return [
        {
            "id": "greet",
            "type": "custom_reply",
            "position": 0,
            "isStart": True,
            "config": {"message": "Welcome!"},
            "nextStepId": "ask_name",
        },
        {
            "id": "ask_name",
            "type": "user_reply",
            "position": 1,
            "config": {"question": "What's your name?", "saveAs": "name"},
            "nextStepId": "pause",
        },
        {
            "id": "pause",
            "type": "time_gap",
            "position": 2,
            "config": {"delaySeconds": delay_seconds},
            "nextStepId": "welcome_back",
        },
        {
            "id": "welcome_back",
            "type": "send_template",
            "position": 3,
            "config": {"templateId": "tpl_welcome_back", "variables": {"name": "{{name}}"}},
        },
    ]


def make_config(**overrides: Any) -> ConvoflowConfig:
    values: dict[str, Any] = {
        "database": DatabaseConfig(url="sqlite:///:memory:"),
        "scheduler": SchedulerConfig(enabled=False),
        "delivery": DeliveryConfig(retry=RetryPolicyConfig(max_attempts=3, backoff_seconds=0.0)),
        "api": ApiServerConfig(enabled=False),
        "templates": [
            TemplateConfig(
                id="tpl_welcome_back", name="welcome_back", body="Welcome back, {{name}}!"
            ),
            TemplateConfig(id="tpl_pending", body="Hi {{name}}", status="pending"),
        ],
    }
    values.update(overrides)
    return ConvoflowConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def config() -> ConvoflowConfig:
    return make_config()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def runtime(config, gateway, clock, sleeps):
    """Fully wired runtime on a private in-memory database."""
    rt = AutomationRuntime(config, gateway=gateway, clock=clock, sleep=sleeps.append)
    yield rt
    rt.db.dispose()


@pytest.fixture
def welcome(runtime):
    """Active welcome automation."""
    return runtime.flows.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )
