"""Workflow definitions, runs and their evaluation helpers."""

from __future__ import annotations

from .conditions import evaluate_conditions, lookup_path
from .models import (
    TERMINAL_RUN_STATUSES,
    ActionSpec,
    ActionType,
    Condition,
    ConditionOperator,
    RunStatus,
    RunStep,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
)
from .templates import ParameterRenderer, build_context, idempotency_key

__all__ = [
    "TERMINAL_RUN_STATUSES",
    "ActionSpec",
    "ActionType",
    "Condition",
    "ConditionOperator",
    "ParameterRenderer",
    "RunStatus",
    "RunStep",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowRun",
    "build_context",
    "evaluate_conditions",
    "idempotency_key",
    "lookup_path",
]
