"""Tests for routing conversation events to runs."""

from unittest.mock import patch

import pytest
from conftest import welcome_steps

from convoflow.dispatch.dispatcher import ConversationStarted, MessageReceived
from convoflow.runs.models import RunOutcome, WaitingFor

KEYWORD_STEPS = [
    {
        "id": "gate",
        "type": "keyword_catch",
        "config": {"keywords": ["help", "agent"]},
        "nextStepId": "handoff",
    },
    {
        "id": "handoff",
        "type": "custom_reply",
        "position": 1,
        "config": {"message": "Connecting you to {{matchedKeyword}} support"},
    },
]


@pytest.fixture
def dispatcher(runtime):
    return runtime.dispatcher


def add_automation(runtime, automation_id, steps, **fields):
    data = {"id": automation_id, "name": automation_id, "status": "active", "steps": steps}
    data.update(fields)
    return runtime.flows.create_automation(data)


def test_new_conversation_starts_active_automations(runtime, dispatcher, welcome, gateway):
    add_automation(runtime, "keywords", KEYWORD_STEPS)
    runtime.flows.create_automation({"id": "draft", "name": "Draft", "steps": welcome_steps()})

    report = dispatcher.on_conversation_started(
        ConversationStarted("conv-1", contact_id="contact-1", payload={"source": "ad"})
    )

    assert len(report.started) == 2
    assert report.matched
    started = {runtime.runs.require(run_id).automation_id for run_id in report.started}
    assert started == {"welcome", "keywords"}
    assert gateway.texts("conv-1") == ["Welcome!", "What's your name?"]


def test_trigger_payload_and_channel_are_recorded(runtime, dispatcher, welcome):
    report = dispatcher.on_conversation_started(
        ConversationStarted("conv-1", channel_id="whatsapp", payload={"source": "ad"})
    )

    run = runtime.runs.require(report.started[0])
    assert run.trigger_data == {"source": "ad", "channelId": "whatsapp"}
    assert run.variables["channelId"] == "whatsapp"


def test_channel_scoped_automation(runtime, dispatcher):
    add_automation(runtime, "wa-only", welcome_steps(), channelId="whatsapp")

    sms = dispatcher.on_conversation_started(ConversationStarted("c1", channel_id="sms"))
    unknown = dispatcher.on_conversation_started(ConversationStarted("c2"))
    whatsapp = dispatcher.on_conversation_started(ConversationStarted("c3", channel_id="whatsapp"))

    assert sms.started == []
    assert unknown.started == []
    assert len(whatsapp.started) == 1


def test_live_run_is_not_started_twice(dispatcher, welcome):
    first = dispatcher.on_conversation_started(ConversationStarted("conv-1"))
    second = dispatcher.on_conversation_started(ConversationStarted("conv-1"))

    assert len(first.started) == 1
    assert second.started == []
    assert second.skipped == {"welcome": "already_running"}


def test_start_failure_does_not_block_other_automations(runtime, dispatcher, welcome):
    add_automation(runtime, "keywords", KEYWORD_STEPS)
    original = runtime.engine.start_run

    def flaky(automation, *args, **kwargs):
        if automation.id == "welcome":
            raise RuntimeError("gateway exploded")
        return original(automation, *args, **kwargs)

    with patch.object(runtime.engine, "start_run", side_effect=flaky):
        report = dispatcher.on_conversation_started(ConversationStarted("conv-1"))

    assert report.errors == {"welcome": "gateway exploded"}
    assert len(report.started) == 1


def test_reply_resumes_waiting_run(runtime, dispatcher, welcome, clock):
    (run_id,) = dispatcher.on_conversation_started(ConversationStarted("conv-1")).started

    report = dispatcher.on_message_received(MessageReceived("conv-1", "Bob", message_id="m-1"))

    assert report.resumed == [run_id]
    run = runtime.runs.require(run_id)
    assert run.variables["name"] == "Bob"
    assert run.waiting_for == WaitingFor.TIME_GAP


def test_message_without_waiting_runs(dispatcher, welcome):
    report = dispatcher.on_message_received(MessageReceived("conv-404", "hello"))

    assert not report.matched
    assert report.to_dict() == {"started": [], "resumed": [], "skipped": {}, "errors": {}}


def test_runs_on_a_time_gap_do_not_take_messages(dispatcher, welcome):
    dispatcher.on_conversation_started(ConversationStarted("conv-1"))
    dispatcher.on_message_received(MessageReceived("conv-1", "Bob", message_id="m-1"))

    report = dispatcher.on_message_received(MessageReceived("conv-1", "Bob?", message_id="m-2"))

    assert report.resumed == []
    assert report.skipped == {}


def test_keyword_gate_ignores_other_messages(runtime, dispatcher, gateway):
    add_automation(runtime, "keywords", KEYWORD_STEPS)
    (run_id,) = dispatcher.on_conversation_started(ConversationStarted("conv-1")).started

    miss = dispatcher.on_message_received(MessageReceived("conv-1", "just browsing"))
    hit = dispatcher.on_message_received(MessageReceived("conv-1", "I need HELP please"))

    assert miss.skipped == {run_id: "no_match"}
    assert hit.resumed == [run_id]
    run = runtime.runs.require(run_id)
    assert run.outcome == RunOutcome.COMPLETED
    assert gateway.texts("conv-1") == ["Connecting you to help support"]


def test_message_reaches_every_waiting_run(runtime, dispatcher, welcome):
    add_automation(runtime, "keywords", KEYWORD_STEPS)
    report = dispatcher.on_conversation_started(ConversationStarted("conv-1"))
    assert len(report.started) == 2

    resumed = dispatcher.on_message_received(MessageReceived("conv-1", "help"))

    assert sorted(resumed.resumed) == sorted(report.started)


def test_button_press_is_matched_by_id(runtime, dispatcher):
    steps = [
        {
            "id": "plan",
            "type": "user_reply",
            "config": {
                "question": "Which plan?",
                "saveAs": "plan",
                "buttons": [{"id": "p1", "text": "Basic"}, {"id": "p2", "text": "Pro"}],
            },
        }
    ]
    add_automation(runtime, "plans", steps)
    (run_id,) = dispatcher.on_conversation_started(ConversationStarted("conv-1")).started

    report = dispatcher.on_message_received(
        MessageReceived("conv-1", "Basic", message_id="m-1", button_id="p2")
    )

    assert report.resumed == [run_id]
    run = runtime.runs.require(run_id)
    assert run.variables["plan"] == "Pro"
    assert run.variables["plan_button_id"] == "p2"
    assert run.outcome == RunOutcome.COMPLETED
