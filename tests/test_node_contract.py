from __future__ import annotations

"""Tests for the handler contract, error boundary and registry."""

import asyncio
from typing import Any

import pytest
from pydantic import BaseModel, Field

import nodes
from engine.node import (
    NodeContext,
    NodeContextData,
    NodeError,
    NodeExecutionError,
    NodeNetworkError,
    NodePermissionError,
    NodeTimeoutError,
    NodeValidationError,
    StepMeta,
    WorkflowMeta,
    define_node,
    invoke_node,
    normalize_error,
)
from engine.registry import DuplicateNodeError, NodeRegistry, UnknownNodeError


def make_context(step_id: str = "step-1") -> NodeContextData:
    return NodeContextData(
        workflow=WorkflowMeta(id="wf-1", name="Demo"),
        step=StepMeta(id=step_id),
        workflow_inputs={"user": "alice"},
        step_results={"previous": {"ok": True}},
    )


class AddInput(BaseModel):
    a: int
    b: int = Field(ge=0)


async def _add(params: AddInput, context: NodeContext) -> Any:
    context.logger.info("adding %s and %s", params.a, params.b)
    return params.a + params.b


def versioned(version: str, label: str):
    async def execute(params: Any, context: NodeContext) -> Any:
        return label

    return define_node(name="sample", description="Versioned sample", version=version, execute=execute)


@pytest.mark.asyncio
async def test_invoke_node_validates_and_returns_logs() -> None:
    node = define_node(name="add", description="Add numbers", version="1.0.0", execute=_add, input_schema=AddInput)
    result = await invoke_node(node, {"a": 2, "b": 3}, make_context())

    assert result.output == 5
    assert result.elapsed_ms >= 0
    assert len(result.logs) == 1
    assert "[INFO] [step-1] adding 2 and 3" in result.logs[0]


@pytest.mark.asyncio
async def test_invoke_node_reports_field_violations() -> None:
    node = define_node(name="add", description="Add numbers", version="1.0.0", execute=_add, input_schema=AddInput)

    with pytest.raises(NodeValidationError) as excinfo:
        await invoke_node(node, {"a": "x", "b": -1}, make_context())

    error = excinfo.value
    assert error.code == "VALIDATION_ERROR"
    assert error.node_name == "add"
    assert {item["field"] for item in error.violations} == {"a", "b"}
    assert str(error).startswith("[add] Input validation failed")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("raised", "expected"),
    [
        (ValueError("bad value"), NodeExecutionError),
        (ConnectionError("reset"), NodeNetworkError),
        (PermissionError("denied"), NodePermissionError),
        (asyncio.TimeoutError(), NodeTimeoutError),
    ],
)
async def test_invoke_node_normalizes_errors(raised: Exception, expected: type) -> None:
    async def execute(params: Any, context: NodeContext) -> Any:
        raise raised

    node = define_node(name="broken", description="Always fails", version="1.0.0", execute=execute)
    with pytest.raises(expected) as excinfo:
        await invoke_node(node, {}, make_context())
    assert excinfo.value.node_name == "broken"


@pytest.mark.asyncio
async def test_handler_sees_context_snapshot() -> None:
    seen: dict = {}

    async def execute(params: Any, context: NodeContext) -> Any:
        seen["workflow"] = context.workflow.id
        seen["attempt"] = context.step.attempt
        seen["inputs"] = context.workflow_inputs
        seen["prior"] = context.step_results
        return None

    node = define_node(name="peek", description="Peek at context", version="1.0.0", execute=execute)
    await invoke_node(node, None, make_context().with_attempt(2))

    assert seen == {
        "workflow": "wf-1",
        "attempt": 2,
        "inputs": {"user": "alice"},
        "prior": {"previous": {"ok": True}},
    }


def test_normalize_error_keeps_node_errors() -> None:
    original = NodeTimeoutError("x", "late")
    assert normalize_error("y", original) is original
    assert isinstance(normalize_error("y", RuntimeError()), NodeExecutionError)
    assert normalize_error("y", RuntimeError()).message == "RuntimeError"
    assert isinstance(normalize_error("y", KeyError("k")), NodeError)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "Bad_Name", "description": "d", "version": "1.0.0"},
        {"name": "ok", "description": "", "version": "1.0.0"},
        {"name": "ok", "description": "d", "version": "v1"},
        {"name": "ok\n", "description": "d", "version": "1.0.0"},
        {"name": "ok", "description": "d", "version": "1.0.0\n"},
    ],
)
def test_define_node_validates_metadata(kwargs: dict) -> None:
    async def execute(params: Any, context: NodeContext) -> Any:
        return None

    with pytest.raises(ValueError):
        define_node(execute=execute, **kwargs)


def test_registry_rejects_duplicate_major_version() -> None:
    registry = NodeRegistry()
    registry.register(versioned("1.0.0", "one"))
    with pytest.raises(DuplicateNodeError):
        registry.register(versioned("1.4.2", "one-again"))


def test_registry_resolves_latest_and_explicit_versions() -> None:
    registry = NodeRegistry()
    registry.register(versioned("1.0.0", "one"))
    registry.register(versioned("2.1.0", "two"))

    assert registry.get("sample").version == "2.1.0"
    assert registry.get("sample", 1).version == "1.0.0"
    assert registry.resolve("sample@v1").version == "1.0.0"
    assert registry.resolve("sample").version == "2.1.0"
    assert registry.activity_names() == ["sample@v1", "sample@v2", "sample"]
    assert len(registry) == 2


def test_registry_unknown_lookups() -> None:
    registry = NodeRegistry()
    registry.register(versioned("1.0.0", "one"))

    with pytest.raises(UnknownNodeError, match="'missing' is not registered"):
        registry.get("missing")
    with pytest.raises(UnknownNodeError):
        registry.resolve("sample@v3")
    assert registry.has("sample") is True
    assert registry.has("sample@v9") is False


def test_registry_discovers_builtin_nodes() -> None:
    registry = NodeRegistry()
    assert registry.discover(nodes) == 3
    assert {node.name for node in registry} == {"code", "log", "wait"}
    assert registry.resolve("code@v1").retry_policy.max_attempts == 1
