"""Rendering of action parameters from the run context."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from ..contracts import EventEnvelope
from ..errors import TemplateError
from .models import RunStep, WorkflowRun

_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.S)


class ParameterRenderer:
    """Render parameter trees with a sandboxed jinja2 environment.

    A string that is exactly one ``{{ expression }}`` keeps the native type of
    the expression (numbers, lists, mappings). Any other string containing
    template syntax renders to text. Undefined variables raise
    :class:`~crossflow.errors.TemplateError`.
    """

    def __init__(self) -> None:
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
        self._env.filters["json"] = json.dumps

    def render(self, value: Any, context: Mapping[str, Any]) -> Any:
        if isinstance(value, str):
            return self.render_string(value, context)
        if isinstance(value, Mapping):
            return {k: self.render(v, context) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render(v, context) for v in value]
        return value

    def render_string(self, template: str, context: Mapping[str, Any]) -> Any:
        if "{{" not in template and "{%" not in template:
            return template
        try:
            match = _SINGLE_EXPRESSION.match(template)
            if match:
                expression = self._env.compile_expression(
                    match.group("expr").strip(), undefined_to_none=False
                )
                result = expression(**context)
                if isinstance(result, Undefined):
                    raise TemplateError(f"Undefined value in template {template!r}")
                return result
            return self._env.from_string(template).render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Cannot render {template!r}: {exc}") from exc


def build_context(
    envelope: EventEnvelope | None,
    run: WorkflowRun,
    steps: List[RunStep],
    action_names: Mapping[int, Optional[str]],
) -> Dict[str, Any]:
    """Assemble the deterministic context used for parameters and keys.

    ``steps`` results are reachable by action index and by action name.
    """
    results: Dict[Any, Any] = {}
    for step in steps:
        results[step.action_index] = step.result
        name = action_names.get(step.action_index)
        if name:
            results[name] = step.result
    event: Dict[str, Any]
    if envelope is not None:
        event = envelope.model_dump(mode="json")
    else:
        event = {
            "id": run.trigger_event_id,
            "tenant_id": run.tenant_id,
            "correlation_id": run.correlation_id,
            "payload": run.trigger_payload,
        }
    return {
        "trigger": run.trigger_payload,
        "event": event,
        "run": {
            "id": run.id,
            "workflow_definition_id": run.workflow_definition_id,
            "tenant_id": run.tenant_id,
            "trigger_event_id": run.trigger_event_id,
            "correlation_id": run.correlation_id,
        },
        "steps": results,
    }


def idempotency_key(
    run_id: str,
    action_index: int,
    template: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
    renderer: Optional[ParameterRenderer] = None,
) -> str:
    """Key passed to a step's operation; identical across retries of the step."""
    if not template:
        return f"{run_id}:{action_index}"
    renderer = renderer or ParameterRenderer()
    key = renderer.render_string(template, context or {})
    if key is None or str(key) == "":
        raise TemplateError(f"Idempotency key template {template!r} rendered empty")
    return str(key)
