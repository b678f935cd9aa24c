from __future__ import annotations

"""Tests for the built-in handlers."""

import pytest

from engine.node import NodeContextData, NodeTimeoutError, NodeValidationError, StepMeta, WorkflowMeta, invoke_node
from nodes.code import node as code_node
from nodes.log import node as log_node
from nodes.wait import node as wait_node


def make_context(step_input=None) -> NodeContextData:
    return NodeContextData(
        workflow=WorkflowMeta(id="wf-1", name="Nodes"),
        step=StepMeta(id="s1"),
        workflow_inputs={"region": "eu"},
        step_results={"prev": 10},
        step_input=step_input,
    )


@pytest.mark.asyncio
async def test_code_node_runs_script_with_step_input() -> None:
    result = await invoke_node(
        code_node,
        {"script": "print('hi')\nreturn input['x'] + context['steps']['prev']", "timeout_ms": 1000},
        make_context({"x": 5}),
    )
    assert result.output["result"] == 15
    assert result.output["logs"] == ["hi"]
    assert any("Running inline script" in line for line in result.logs)


@pytest.mark.asyncio
async def test_code_node_times_out() -> None:
    with pytest.raises(NodeTimeoutError):
        await invoke_node(code_node, {"script": "await sleep(5)", "timeout_ms": 100}, make_context())


@pytest.mark.asyncio
async def test_code_node_rejects_oversized_timeout() -> None:
    with pytest.raises(NodeValidationError) as excinfo:
        await invoke_node(code_node, {"script": "return 1", "timeout_ms": 10_000_000}, make_context())
    assert excinfo.value.violations[0]["field"] == "timeout_ms"


@pytest.mark.asyncio
async def test_log_node_writes_audit_entry() -> None:
    result = await invoke_node(
        log_node,
        {"message": "order shipped", "level": "warning", "data": {"order": 7}},
        make_context(),
    )
    assert "logged_at" in result.output
    assert len(result.logs) == 1
    assert '[WARNING] [s1] order shipped {"order": 7}' in result.logs[0]


@pytest.mark.asyncio
async def test_log_node_requires_message() -> None:
    with pytest.raises(NodeValidationError):
        await invoke_node(log_node, {"message": ""}, make_context())


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", ["0s", 20])
async def test_wait_node_accepts_durations(duration) -> None:
    result = await invoke_node(wait_node, {"duration": duration}, make_context())
    assert result.output["waited_for_ms"] >= 0
    assert "resumed_at" in result.output


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", ["5x", "1.5s", -3])
async def test_wait_node_rejects_bad_durations(duration) -> None:
    with pytest.raises(NodeValidationError):
        await invoke_node(wait_node, {"duration": duration}, make_context())
