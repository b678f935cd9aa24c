from __future__ import annotations

"""Tests for template rendering and condition evaluation."""

import pytest

from engine.state import StepResult
from engine.templating import build_context, evaluate_condition, render_string, render_value, resolve_path


@pytest.fixture
def ctx() -> dict:
    return build_context(
        {"user": {"name": "Alice", "tags": ["a", "b"]}, "count": 3, "enabled": False},
        {"fetch": StepResult.completed("fetch", {"items": [{"id": 7}], "total": 1})},
    )


def test_single_expression_preserves_type(ctx: dict) -> None:
    assert render_value("{{inputs.user}}", ctx) == {"name": "Alice", "tags": ["a", "b"]}
    assert render_value("{{ inputs.count }}", ctx) == 3
    assert render_value("{{inputs.enabled}}", ctx) is False


def test_mixed_text_renders_strings(ctx: dict) -> None:
    assert render_value("Hello {{inputs.user.name}}", ctx) == "Hello Alice"
    assert render_value("{{inputs.count}} items", ctx) == "3 items"
    assert render_value("tags={{inputs.user.tags}}", ctx) == 'tags=["a", "b"]'


def test_expression_with_surrounding_text_is_not_single(ctx: dict) -> None:
    assert render_value("{{inputs.user.name}}\n", ctx) == "Alice\n"
    assert render_value("{{inputs.count}}\n", ctx) == "3\n"


def test_missing_paths_render_empty(ctx: dict) -> None:
    assert render_value("Hi {{inputs.nobody.name}}!", ctx) == "Hi !"
    assert render_value("{{step.unknown.result}}", ctx) is None


def test_step_results_and_list_indexes(ctx: dict) -> None:
    assert resolve_path(ctx, "step.fetch.result.items.0.id") == 7
    assert resolve_path(ctx, "step.fetch.result.items.5.id") is None
    assert render_value("total={{step.fetch.result.total}}", ctx) == "total=1"


def test_render_value_recurses(ctx: dict) -> None:
    rendered = render_value(
        {"name": "{{inputs.user.name}}", "list": ["{{inputs.count}}", 5, None], "flag": True},
        ctx,
    )
    assert rendered == {"name": "Alice", "list": [3, 5, None], "flag": True}


def test_build_context_is_a_snapshot() -> None:
    result = StepResult.completed("a", {"value": [1]})
    ctx = build_context({"x": {"y": 1}}, {"a": result})
    ctx["step"]["a"]["result"]["value"].append(2)
    ctx["inputs"]["x"]["y"] = 99

    assert result.output == {"value": [1]}
    assert build_context({"x": {"y": 1}}, {"a": result})["inputs"]["x"]["y"] == 1


def test_booleans_render_lowercase(ctx: dict) -> None:
    assert render_string("{{inputs.enabled}}", ctx) == "false"


@pytest.mark.parametrize("rendered", ["", "false", "0", "  false  "])
def test_condition_falsy_set(rendered: str) -> None:
    assert evaluate_condition("{{inputs.value}}", {"inputs": {"value": rendered}}) is False


@pytest.mark.parametrize("rendered", ["true", "1", "No", "False", "off", "null"])
def test_condition_truthy_values(rendered: str) -> None:
    assert evaluate_condition("{{inputs.value}}", {"inputs": {"value": rendered}}) is True


def test_condition_on_missing_value_is_false(ctx: dict) -> None:
    assert evaluate_condition("{{inputs.missing}}", ctx) is False
    assert evaluate_condition("{{inputs.enabled}}", ctx) is False
    assert evaluate_condition("{{inputs.count}}", ctx) is True
