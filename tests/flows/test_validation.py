"""Tests for flow graph validation."""

import json
import random

import pytest

from convoflow.core.exceptions import ValidationError
from convoflow.flows.models import Step, StepType
from convoflow.flows.validation import (
    find_entry_step,
    reachable_step_ids,
    validate_flow_file,
    validate_steps,
)


def reply(step_id, position=0, next_step_id=None, **extra):
    return Step(
        id=step_id,
        type=StepType.CUSTOM_REPLY,
        position=position,
        config={"message": f"message from {step_id}"},
        next_step_id=next_step_id,
        **extra,
    )


def test_valid_chain_returns_entry_and_normalized_steps():
    steps = [
        reply("a", 0, "b"),
        Step(
            id="b",
            type=StepType.USER_REPLY,
            position=1,
            config={"question": "Name?", "saveAs": "name"},
        ),
    ]
    flow = validate_steps(steps)

    assert flow.entry_step_id == "a"
    assert flow.steps[1].config == {"question": "Name?", "save_as": "name", "buttons": []}


def test_empty_step_list():
    assert validate_steps([]).entry_step_id is None
    with pytest.raises(ValidationError, match="at least one step"):
        validate_steps([], require_steps=True)


def test_duplicate_ids_are_rejected():
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([reply("a", 0), reply("a", 1)])
    assert exc_info.value.step_ids == ["a"]


def test_dangling_edge_names_offending_step():
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([reply("a", 0, "b"), reply("b", 1, "nowhere")])
    assert exc_info.value.step_ids == ["b"]
    assert "leaves the automation" in str(exc_info.value)


def test_keyword_branch_to_missing_step_is_rejected():
    gate = Step(
        id="gate",
        type=StepType.KEYWORD_CATCH,
        config={"keywords": ["help"], "branches": {"help": "missing"}},
    )
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([gate])
    assert exc_info.value.step_ids == ["gate"]


def test_cycle_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([reply("a", 0, "b"), reply("b", 1, "c"), reply("c", 2, "a")])
    assert exc_info.value.step_ids == ["c"]
    assert "cycle" in str(exc_info.value)


def test_self_loop_is_rejected():
    with pytest.raises(ValidationError, match="cycle"):
        validate_steps([reply("a", 0, "a")])


def test_cycle_through_keyword_branch_is_rejected():
    gate = Step(
        id="gate",
        type=StepType.KEYWORD_CATCH,
        position=1,
        config={"keywords": ["again"], "branches": {"again": "start"}},
    )
    with pytest.raises(ValidationError, match="cycle"):
        validate_steps([reply("start", 0, "gate"), gate])


def test_invalid_config_names_step():
    broken = Step(id="ask", type=StepType.USER_REPLY, position=1, config={"saveAs": "name"})
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([reply("a", 0, "ask"), broken])
    assert exc_info.value.step_ids == ["ask"]
    assert "question" in str(exc_info.value)


def test_negative_delay_is_rejected():
    gap = Step(id="gap", type=StepType.TIME_GAP, config={"delaySeconds": -5})
    with pytest.raises(ValidationError):
        validate_steps([gap])


def test_branch_for_unknown_keyword_is_rejected():
    gate = Step(
        id="gate",
        type=StepType.KEYWORD_CATCH,
        config={"keywords": ["yes"], "branches": {"no": "gate"}},
    )
    with pytest.raises(ValidationError, match="unknown keywords"):
        validate_steps([gate])


def test_unreachable_steps_are_allowed_but_type_checked():
    flow = validate_steps([reply("a", 0), reply("draft", 5)])
    assert [step.id for step in flow.steps] == ["a", "draft"]

    broken_draft = Step(id="draft", type=StepType.TIME_GAP, position=5, config={})
    with pytest.raises(ValidationError) as exc_info:
        validate_steps([reply("a", 0), broken_draft])
    assert exc_info.value.step_ids == ["draft"]


def test_entry_prefers_start_marker_over_position():
    steps = [reply("a", 0), reply("b", 3, is_start=True)]
    assert find_entry_step(steps) == "b"


def test_entry_falls_back_to_lowest_position():
    assert find_entry_step([reply("late", 4), reply("early", 1)]) == "early"


def test_ambiguous_entry_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        find_entry_step([reply("a", 0), reply("b", 0)])
    assert sorted(exc_info.value.step_ids) == ["a", "b"]


def test_multiple_start_markers_are_rejected():
    with pytest.raises(ValidationError, match="more than one"):
        find_entry_step([reply("a", 0, is_start=True), reply("b", 1, is_start=True)])


def test_reachable_step_ids():
    steps = [reply("a", 0, "b"), reply("b", 1), reply("c", 2)]
    assert reachable_step_ids("a", steps) == {"a", "b"}


@pytest.mark.parametrize("seed", range(20))
def test_random_forward_graphs_are_accepted(seed):
    """Graphs whose edges only point forward are always acyclic."""
    rng = random.Random(seed)
    count = rng.randint(1, 12)
    steps = []
    for index in range(count):
        later = list(range(index + 1, count))
        target = f"s{rng.choice(later)}" if later and rng.random() < 0.8 else None
        steps.append(reply(f"s{index}", index, target))

    flow = validate_steps(steps)
    assert flow.entry_step_id == "s0"


@pytest.mark.parametrize("seed", range(20))
def test_random_back_edges_are_rejected(seed):
    """A chain closed by an edge back into itself never validates."""
    rng = random.Random(seed)
    count = rng.randint(2, 12)
    back_to = rng.randrange(count)
    steps = [
        reply(f"s{index}", index, f"s{index + 1}" if index + 1 < count else f"s{back_to}")
        for index in range(count)
    ]

    with pytest.raises(ValidationError, match="cycle"):
        validate_steps(steps)


# ----------------------------------------------------------------------
# Flow files
# ----------------------------------------------------------------------


def test_validate_flow_file_yaml(tmp_path):
    path = tmp_path / "flow.yaml"
    path.write_text(
        """
name: Greeting
status: active
steps:
  - id: hello
    type: custom_reply
    config:
      message: Hi {{contactId}}
""",
        encoding="utf-8",
    )
    assert validate_flow_file(path) == (True, [])


def test_validate_flow_file_json_with_errors(tmp_path):
    path = tmp_path / "flow.json"
    path.write_text(
        json.dumps(
            {
                "name": "Broken",
                "steps": [
                    {
                        "id": "a",
                        "type": "custom_reply",
                        "config": {"message": "x"},
                        "nextStepId": "zzz",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    ok, errors = validate_flow_file(path)
    assert not ok
    assert errors == ["step 'a': edge to 'zzz' leaves the automation"]


def test_validate_flow_file_bad_step_type(tmp_path):
    path = tmp_path / "flow.yaml"
    path.write_text("name: x\nsteps:\n  - id: a\n    type: teleport\n", encoding="utf-8")
    ok, errors = validate_flow_file(path)
    assert not ok
    assert any("type" in error for error in errors)


def test_validate_flow_file_missing_and_malformed(tmp_path):
    ok, errors = validate_flow_file(tmp_path / "missing.yaml")
    assert not ok
    assert "not found" in errors[0]

    bad = tmp_path / "bad.yaml"
    bad.write_text("steps: [unclosed", encoding="utf-8")
    ok, errors = validate_flow_file(bad)
    assert not ok
    assert "Invalid YAML" in errors[0]
