from __future__ import annotations

"""Template rendering for step inputs and conditions.

Expressions use ``{{ path.to.value }}`` syntax and are resolved against a
template context of the shape ``{"inputs": {...}, "step": {id: {"result": ...}}}``.
A string that is exactly one expression resolves to the referenced value with
its type intact; mixed text renders each value to a string in place.
"""

import copy
import json
import re
from typing import Any, Dict, Mapping

from engine.state import StepResult

TemplateContext = Dict[str, Any]

_EXPRESSION = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

FALSY_RENDERINGS = frozenset({"", "false", "0"})


def build_context(inputs: Mapping[str, Any], results: Mapping[str, StepResult]) -> TemplateContext:
    """Build a fresh template context from workflow inputs and recorded results.

    Only the output values of steps that hold a result are exposed. The
    returned structure is a deep copy, so rendering can never reach back into
    run state.
    """

    return {
        "inputs": copy.deepcopy(dict(inputs)),
        "step": {
            step_id: {"result": copy.deepcopy(result.output)}
            for step_id, result in results.items()
        },
    }


def resolve_path(context: Any, path: str) -> Any:
    """Walk dot-separated segments; any missing segment resolves to ``None``."""

    current = context
    for segment in path.strip().split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def to_text(value: Any) -> str:
    """Render a resolved value for splicing into surrounding text."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render_string(template: str, context: TemplateContext) -> str:
    """Render every expression in ``template`` to text."""

    return _EXPRESSION.sub(lambda match: to_text(resolve_path(context, match.group(1))), template)


def render_value(value: Any, context: TemplateContext) -> Any:
    """Recursively render templates inside a value tree."""

    if isinstance(value, str):
        single = _EXPRESSION.fullmatch(value)
        if single:
            return resolve_path(context, single.group(1))
        return render_string(value, context)
    if isinstance(value, list):
        return [render_value(item, context) for item in value]
    if isinstance(value, tuple):
        return tuple(render_value(item, context) for item in value)
    if isinstance(value, Mapping):
        return {key: render_value(item, context) for key, item in value.items()}
    return value


def evaluate_condition(expression: str, context: TemplateContext) -> bool:
    """Evaluate a condition by rendering it to text.

    Exactly ``""``, ``"false"`` and ``"0"`` (after trimming) are false; any
    other rendering is true.
    """

    return render_string(expression, context).strip() not in FALSY_RENDERINGS


__all__ = [
    "FALSY_RENDERINGS",
    "TemplateContext",
    "build_context",
    "evaluate_condition",
    "render_string",
    "render_value",
    "resolve_path",
    "to_text",
]
