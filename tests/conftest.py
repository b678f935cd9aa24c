from __future__ import annotations

"""Shared fixtures: a registry of built-in plus test-local handlers."""

import asyncio
import threading
from typing import Any

import pytest
from pydantic import BaseModel

import nodes
from engine.config import EngineSettings
from engine.graph import WorkflowGraph
from engine.node import NodeContext, define_node
from engine.orchestrator import WorkflowOrchestrator
from engine.policy import HandlerRetryPolicy
from engine.registry import NodeRegistry
from engine.substrate import LocalSubstrate


class StrictInput(BaseModel):
    name: str


async def _echo(params: Any, context: NodeContext) -> Any:
    context.logger.info("echo on attempt %s", context.step.attempt)
    return params


async def _fail(params: Any, context: NodeContext) -> Any:
    raise ValueError((params or {}).get("message", "boom"))


async def _flaky(params: Any, context: NodeContext) -> Any:
    if context.step.attempt < params["succeed_on"]:
        raise ConnectionError(f"connection reset on attempt {context.step.attempt}")
    return {"attempt": context.step.attempt}


async def _sleeper(params: Any, context: NodeContext) -> Any:
    await asyncio.sleep(params["seconds"])
    return {"slept": params["seconds"]}


async def _inspect(params: Any, context: NodeContext) -> Any:
    return {
        "workflow": context.workflow.model_dump(),
        "step": context.step.model_dump(),
        "inputs": context.workflow_inputs,
        "prior": context.step_results,
    }


async def _locker(params: Any, context: NodeContext) -> Any:
    return {"lock": threading.Lock()}


async def _greet(params: StrictInput, context: NodeContext) -> Any:
    return {"greeting": f"Hello {params.name}"}


TEST_NODES = [
    define_node(name="echo", description="Return the input unchanged", version="1.0.0", execute=_echo),
    define_node(name="fail", description="Always raise", version="1.0.0", execute=_fail),
    define_node(name="flaky", description="Fail until a given attempt", version="1.0.0", execute=_flaky),
    define_node(name="sleeper", description="Sleep for a while", version="1.0.0", execute=_sleeper),
    define_node(name="inspect", description="Return the node context", version="1.0.0", execute=_inspect),
    define_node(name="locker", description="Return an output that cannot be copied", version="1.0.0", execute=_locker),
    define_node(
        name="greet",
        description="Greet by name",
        version="1.0.0",
        execute=_greet,
        input_schema=StrictInput,
        retry_policy=HandlerRetryPolicy(max_attempts=3, non_retryable_error_codes=("VALIDATION_ERROR",)),
    ),
]


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        default_initial_interval="1ms",
        default_maximum_attempts=1,
        default_script_timeout="5s",
    )


@pytest.fixture
def registry() -> NodeRegistry:
    registry = NodeRegistry()
    registry.discover(nodes)
    for node in TEST_NODES:
        registry.register(node)
    return registry


@pytest.fixture
def make_orchestrator(registry: NodeRegistry, settings: EngineSettings):
    def _build(steps: list[dict], **kwargs: Any) -> WorkflowOrchestrator:
        return WorkflowOrchestrator(
            WorkflowGraph.build(steps),
            LocalSubstrate(registry),
            registry=registry,
            settings=settings,
            **kwargs,
        )

    return _build
