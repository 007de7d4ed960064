"""Authored automations: models, graph validation and storage."""

from .models import (
    Automation,
    AutomationDraft,
    AutomationStatus,
    FlowSnapshot,
    Step,
    StepType,
    TriggerType,
)
from .store import FlowStore
from .validation import ValidatedFlow, validate_flow_file, validate_steps

__all__ = [
    "Automation",
    "AutomationDraft",
    "AutomationStatus",
    "FlowSnapshot",
    "FlowStore",
    "Step",
    "StepType",
    "TriggerType",
    "ValidatedFlow",
    "validate_flow_file",
    "validate_steps",
]
