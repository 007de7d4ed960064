"""Tests for the automation store."""

from unittest.mock import MagicMock

import pytest
from conftest import welcome_steps

from convoflow.core.database import init_database
from convoflow.core.exceptions import AutomationNotFound, ValidationError
from convoflow.flows.models import AutomationDraft, AutomationStatus
from convoflow.flows.store import FlowStore


@pytest.fixture
def store(clock):
    db = init_database("sqlite:///:memory:")
    yield FlowStore(db, clock=clock)
    db.dispose()


def test_create_inactive_draft_without_steps(store):
    automation = store.create_automation({"name": "  Draft  "})

    assert automation.name == "Draft"
    assert automation.status == AutomationStatus.INACTIVE
    assert automation.steps == []
    assert automation.current_snapshot_id is None
    assert automation.execution_count == 0


def test_create_requires_name(store):
    with pytest.raises(ValidationError, match="name is required"):
        store.create_automation({"steps": welcome_steps()})


def test_create_active_requires_steps(store):
    with pytest.raises(ValidationError, match="at least one step"):
        store.create_automation({"name": "Empty", "status": "active"})


def test_create_active_takes_snapshot(store):
    automation = store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )

    snapshot = store.get_snapshot(automation.current_snapshot_id)
    assert snapshot is not None
    assert snapshot.version == 1
    assert snapshot.entry_step_id == "greet"
    assert [step.id for step in snapshot.steps] == ["greet", "ask_name", "pause", "welcome_back"]


def test_create_rejects_duplicate_id(store):
    store.create_automation({"id": "dup", "name": "One"})
    with pytest.raises(ValidationError, match="already exists"):
        store.create_automation({"id": "dup", "name": "Two"})


def test_invalid_graph_is_not_persisted(store):
    steps = welcome_steps()
    steps[-1]["nextStepId"] = "greet"

    with pytest.raises(ValidationError) as exc_info:
        store.create_automation({"id": "loop", "name": "Loop", "steps": steps})
    assert exc_info.value.step_ids == ["welcome_back"]
    with pytest.raises(AutomationNotFound):
        store.get_automation("loop")


def test_update_active_steps_takes_new_snapshot(store):
    automation = store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )
    first_snapshot_id = automation.current_snapshot_id

    steps = welcome_steps()
    steps[0]["config"]["message"] = "Hello again!"
    updated = store.update_automation("welcome", {"steps": steps})

    assert updated.current_snapshot_id != first_snapshot_id
    assert store.get_snapshot(updated.current_snapshot_id).version == 2
    old = store.get_snapshot(first_snapshot_id)
    assert old.step("greet").config["message"] == "Welcome!"


def test_update_metadata_keeps_snapshot(store):
    automation = store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )
    updated = store.update_automation("welcome", {"name": "Renamed", "description": "d"})

    assert updated.name == "Renamed"
    assert updated.description == "d"
    assert updated.current_snapshot_id == automation.current_snapshot_id


def test_failed_update_leaves_stored_steps(store):
    store.create_automation({"id": "welcome", "name": "Welcome", "steps": welcome_steps()})
    steps = welcome_steps()
    steps[1]["config"] = {"saveAs": "name"}

    with pytest.raises(ValidationError) as exc_info:
        store.update_automation("welcome", AutomationDraft.model_validate({"steps": steps}))
    assert exc_info.value.step_ids == ["ask_name"]
    assert store.list_steps("welcome")[1].config["question"] == "What's your name?"


def test_update_unknown_automation(store):
    with pytest.raises(AutomationNotFound):
        store.update_automation("missing", {"name": "x"})


def test_list_automations_filters(store):
    store.create_automation({"id": "a", "name": "A", "status": "active", "steps": welcome_steps()})
    store.create_automation({"id": "b", "name": "B"})

    assert [a.id for a in store.list_automations()] == ["a", "b"]
    assert [a.id for a in store.list_automations(status="active")] == ["a"]
    assert [a.id for a in store.list_automations(trigger="new_conversation")] == ["a", "b"]
    with pytest.raises(ValueError):
        store.list_automations(status="bogus")


def test_list_steps_orders_by_position(store):
    steps = list(reversed(welcome_steps()))
    store.create_automation({"id": "welcome", "name": "Welcome", "steps": steps})

    assert [step.id for step in store.list_steps("welcome")] == [
        "greet",
        "ask_name",
        "pause",
        "welcome_back",
    ]


def test_toggle_and_deactivation_hooks(store):
    hook = MagicMock()
    store.add_deactivation_hook(hook)
    store.create_automation({"id": "welcome", "name": "Welcome", "steps": welcome_steps()})

    activated = store.toggle("welcome")
    assert activated.status == AutomationStatus.ACTIVE
    assert activated.current_snapshot_id is not None
    hook.assert_not_called()

    deactivated = store.toggle("welcome")
    assert deactivated.status == AutomationStatus.INACTIVE
    hook.assert_called_once_with("welcome", "automation_inactive")


def test_pausing_fires_hooks_with_reason(store):
    hook = MagicMock()
    store.add_deactivation_hook(hook)
    store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )

    paused = store.set_status("welcome", "paused")

    assert paused.status == AutomationStatus.PAUSED
    hook.assert_called_once_with("welcome", "automation_paused")
    assert store.toggle("welcome").status == AutomationStatus.ACTIVE


def test_failing_hook_does_not_block_change(store):
    store.add_deactivation_hook(MagicMock(side_effect=RuntimeError("boom")))
    store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )

    assert store.set_status("welcome", "inactive").status == AutomationStatus.INACTIVE


def test_activation_with_invalid_steps_is_rejected(store):
    store.create_automation({"id": "empty", "name": "Empty"})
    with pytest.raises(ValidationError):
        store.set_status("empty", "active")
    assert store.get_automation("empty").status == AutomationStatus.INACTIVE


def test_delete_fires_hooks_and_removes_everything(store):
    hook = MagicMock()
    store.add_deactivation_hook(hook)
    automation = store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )

    store.delete_automation("welcome")

    hook.assert_called_once_with("welcome", "automation_deleted")
    with pytest.raises(AutomationNotFound):
        store.get_automation("welcome")
    assert store.get_snapshot(automation.current_snapshot_id) is None
    with pytest.raises(AutomationNotFound):
        store.delete_automation("welcome")


def test_record_execution(store, clock):
    store.create_automation({"id": "welcome", "name": "Welcome"})
    store.record_execution("welcome")
    store.record_execution("welcome")

    automation = store.get_automation("welcome")
    assert automation.execution_count == 2
    assert automation.last_executed_at == clock.now


def test_snapshot_for_test_does_not_touch_current_snapshot(store):
    store.create_automation({"id": "welcome", "name": "Welcome", "steps": welcome_steps()})

    first = store.snapshot_for_test("welcome")
    second = store.snapshot_for_test("welcome")

    assert first.id == second.id
    assert store.get_automation("welcome").current_snapshot_id is None
    assert store.latest_snapshot("welcome").id == first.id


def test_snapshot_for_test_follows_edits(store):
    automation = store.create_automation(
        {"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()}
    )
    assert store.snapshot_for_test("welcome").id == automation.current_snapshot_id

    store.set_status("welcome", "inactive")
    steps = welcome_steps()
    steps[0]["config"]["message"] = "Edited"
    store.update_automation("welcome", {"steps": steps})

    snapshot = store.snapshot_for_test("welcome")
    assert snapshot.id != automation.current_snapshot_id
    assert snapshot.step("greet").config["message"] == "Edited"
    assert store.get_automation("welcome").current_snapshot_id == automation.current_snapshot_id


def test_snapshot_for_test_requires_steps(store):
    store.create_automation({"id": "empty", "name": "Empty"})
    with pytest.raises(ValidationError):
        store.snapshot_for_test("empty")
