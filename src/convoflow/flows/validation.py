"""Flow graph validation and flow file checking."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import ValidationError, ValidationIssue
from ..core.logger import get_logger
from .models import AutomationDraft, Step

logger = get_logger("flows.validation")


@dataclass(frozen=True)
class ValidatedFlow:
    """Result of a successful validation: normalized steps and the entry point."""

    entry_step_id: str | None
    steps: tuple[Step, ...]


def _format_config_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"]) or "config"
        parts.append(f"{loc}: {error['msg']}")
    return "; ".join(parts)


def normalize_step(step: Step) -> Step:
    """Return ``step`` with its config parsed and dumped in canonical form.

    Raises:
        ValidationError: If the config does not match the step type
    """
    try:
        settings = step.settings
    except PydanticValidationError as exc:
        raise ValidationError(
            [
                ValidationIssue(
                    f"invalid {step.type.value} config: {_format_config_error(exc)}", step.id
                )
            ]
        ) from exc
    return step.model_copy(update={"config": settings.model_dump(mode="json")})


def find_entry_step(steps: Sequence[Step]) -> str:
    """Pick the entry step: the explicit start marker, else the unique lowest position.

    Raises:
        ValidationError: If the entry point is missing or ambiguous
    """
    if not steps:
        raise ValidationError("automation has no steps")

    marked = [step for step in steps if step.is_start]
    if len(marked) > 1:
        raise ValidationError(
            [ValidationIssue("more than one step is marked as start", step.id) for step in marked]
        )
    if marked:
        return marked[0].id

    lowest = min(step.position for step in steps)
    candidates = [step for step in steps if step.position == lowest]
    if len(candidates) > 1:
        raise ValidationError(
            [
                ValidationIssue(
                    f"ambiguous entry: several steps share the lowest position {lowest}", step.id
                )
                for step in candidates
            ]
        )
    return candidates[0].id


def _find_cycles(entry_step_id: str, by_id: dict[str, Step]) -> list[ValidationIssue]:
    """Depth-first search from the entry, reporting every back edge."""
    issues: list[ValidationIssue] = []
    visiting, done = 1, 2
    state: dict[str, int] = {entry_step_id: visiting}
    stack = [(entry_step_id, iter(by_id[entry_step_id].edges()))]

    while stack:
        node, edges = stack[-1]
        target = next(edges, None)
        if target is None:
            state[node] = done
            stack.pop()
            continue
        if target not in by_id:
            continue
        seen = state.get(target)
        if seen == visiting:
            issues.append(ValidationIssue(f"edge to '{target}' creates a cycle", node))
        elif seen is None:
            state[target] = visiting
            stack.append((target, iter(by_id[target].edges())))

    return issues


def reachable_step_ids(entry_step_id: str, steps: Sequence[Step]) -> set[str]:
    """Ids of every step reachable from the entry step."""
    by_id = {step.id: step for step in steps}
    seen: set[str] = set()
    pending = [entry_step_id]
    while pending:
        step_id = pending.pop()
        if step_id in seen or step_id not in by_id:
            continue
        seen.add(step_id)
        pending.extend(by_id[step_id].edges())
    return seen


def validate_steps(steps: Sequence[Step], require_steps: bool = False) -> ValidatedFlow:
    """Validate a step list and return its normalized form.

    Checks, in order: at least one step (when ``require_steps``), unique ids,
    per-type configs, a single entry point, edges that stay inside the
    automation, and acyclicity of the graph reachable from the entry.

    Raises:
        ValidationError: Listing every offending step
    """
    if not steps:
        if require_steps:
            raise ValidationError("automation must have at least one step to be activated")
        return ValidatedFlow(entry_step_id=None, steps=())

    issues: list[ValidationIssue] = []

    seen_ids: set[str] = set()
    for step in steps:
        if step.id in seen_ids:
            issues.append(ValidationIssue("duplicate step id", step.id))
        seen_ids.add(step.id)

    normalized: list[Step] = []
    for step in steps:
        try:
            normalized.append(normalize_step(step))
        except ValidationError as exc:
            issues.extend(exc.issues)
            normalized.append(step)

    for step in normalized:
        for target in step.edges():
            if target not in seen_ids:
                issues.append(
                    ValidationIssue(f"edge to '{target}' leaves the automation", step.id)
                )

    entry_step_id: str | None = None
    try:
        entry_step_id = find_entry_step(normalized)
    except ValidationError as exc:
        issues.extend(exc.issues)

    if issues or entry_step_id is None:
        raise ValidationError(issues)

    by_id = {step.id: step for step in normalized}
    cycle_issues = _find_cycles(entry_step_id, by_id)
    if cycle_issues:
        raise ValidationError(cycle_issues)

    unreachable = seen_ids - reachable_step_ids(entry_step_id, normalized)
    if unreachable:
        logger.debug("Unreachable steps kept as drafts: %s", ", ".join(sorted(unreachable)))

    return ValidatedFlow(entry_step_id=entry_step_id, steps=tuple(normalized))


def validate_flow_file(path: str | Path) -> tuple[bool, list[str]]:
    """Validate an automation definition stored as YAML or JSON.

    Returns:
        Tuple of (is_valid, list_of_errors)

    Example:
        ```python
        ok, errors = validate_flow_file("welcome.yaml")
        ```
    """
    flow_file = Path(path)
    if not flow_file.exists():
        return False, [f"Flow file not found: {path}"]

    try:
        with open(flow_file, encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        return False, [f"Invalid YAML syntax: {exc}"]

    try:
        draft = AutomationDraft.model_validate(data)
    except PydanticValidationError as exc:
        errors = []
        for error in exc.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
        return False, errors

    try:
        validate_steps(draft.steps or [], require_steps=draft.status == "active")
    except ValidationError as exc:
        return False, [str(issue) for issue in exc.issues]
    return True, []
