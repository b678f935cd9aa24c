from __future__ import annotations

"""Per-step policy: skip checks, input rendering and dispatch by step kind."""

import asyncio
import copy
import logging
import time
from typing import Any, Mapping

from engine.config import EngineSettings, get_settings
from engine.graph import ActivityStep, CodeStep, SignalStep, StepDefinition, WorkflowGraph
from engine.node import NodeContextData, NodeError, NodeTimeoutError, StepMeta, WorkflowMeta
from engine.policy import RetryPolicy, parse_duration, retry_policy_for, timeout_for
from engine.registry import NodeRegistry, UnknownNodeError
from engine.sandbox import STARTUP_ALLOWANCE
from engine.state import StepResult, WorkflowRun
from engine.substrate import TaskSubstrate
from engine.templating import build_context, evaluate_condition, render_value

logger = logging.getLogger("workflow.executor")

CODE_HANDLER = "code"
CANCELLED_BEFORE_SIGNAL = "Skipped because workflow was cancelled before signal was received"

# Extra time the substrate allows a code step beyond the script's own cap. It
# covers process startup so the sandbox reports the timeout itself.
_SCRIPT_DEADLINE_GRACE = STARTUP_ALLOWANCE + 1.0


class StepExecutor:
    """Runs one step against the current run state and returns its result.

    The executor never writes to the run; recording results is left to the
    orchestrator.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        substrate: TaskSubstrate,
        *,
        registry: NodeRegistry | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._graph = graph
        self._substrate = substrate
        self._registry = registry
        self._settings = settings or get_settings()

    async def execute(self, step_id: str, run: WorkflowRun) -> StepResult:
        step = self._graph.get_step(step_id)
        if step is None:
            raise KeyError(f"Unknown step '{step_id}'")

        skipped = self.check_dependencies(step_id, run.results)
        if skipped is not None:
            logger.info("Step %s skipped: %s", step_id, skipped.error)
            return skipped

        started = time.perf_counter()
        try:
            context = build_context(run.inputs, run.results)
            if step.condition and not evaluate_condition(step.condition, context):
                logger.info("Step %s skipped: condition %r is false", step_id, step.condition)
                return StepResult.skipped(step_id, f"Skipped due to unmet condition: {step.condition}")

            rendered = render_value(step.input if step.input is not None else {}, context)
            return await self._dispatch(step, rendered, run, started)
        except NodeError as exc:
            return StepResult.failed(
                step_id,
                str(exc),
                error_code=exc.code,
                attempt=exc.attempts,
                duration_ms=_elapsed_ms(started),
            )
        except UnknownNodeError as exc:
            logger.warning("Step %s: %s", step_id, exc)
            return StepResult.failed(
                step_id,
                str(exc),
                error_code="EXECUTION_ERROR",
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:
            logger.exception("Step %s failed outside the handler boundary", step_id)
            return StepResult.failed(
                step_id,
                str(exc) or type(exc).__name__,
                error_code="EXECUTION_ERROR",
                duration_ms=_elapsed_ms(started),
            )

    def check_dependencies(self, step_id: str, results: Mapping[str, StepResult]) -> StepResult | None:
        """Return a skipped result if any transitive dependency failed or was skipped."""

        for dep_id in self._graph.dependencies_of(step_id):
            result = results.get(dep_id)
            if result is not None and result.status in ("failed", "skipped"):
                return StepResult.skipped(step_id, f"Skipped due to {result.status} dependency: {dep_id}")
        return None

    def build_node_context(self, step: StepDefinition, run: WorkflowRun, *, step_input: Any = None) -> NodeContextData:
        """Snapshot run inputs and prior outputs for a handler call."""

        return NodeContextData(
            workflow=WorkflowMeta(id=run.workflow_id, name=run.workflow_name),
            step=StepMeta(id=step.id),
            workflow_inputs=copy.deepcopy(run.inputs),
            step_results=copy.deepcopy(run.outputs()),
            step_input=step_input,
        )

    def retry_policy(self, step: StepDefinition, handler_name: str) -> RetryPolicy:
        handler_policy = None
        if self._registry is not None:
            handler_policy = self._registry.resolve(handler_name).retry_policy
        return retry_policy_for(step.retry, handler_policy, self._settings)

    async def _dispatch(self, step: StepDefinition, rendered: Any, run: WorkflowRun, started: float) -> StepResult:
        if isinstance(step, SignalStep):
            return await self._wait_for_signal(step, run, started)
        if isinstance(step, CodeStep):
            return await self._run_code(step, rendered, run, started)
        if isinstance(step, ActivityStep):
            return await self._run_activity(step, rendered, run, started)
        raise TypeError(f"Unsupported step kind: {type(step).__name__}")

    async def _run_activity(self, step: ActivityStep, rendered: Any, run: WorkflowRun, started: float) -> StepResult:
        outcome = await self._substrate.invoke(
            step.handler_name,
            rendered,
            self.build_node_context(step, run),
            timeout=timeout_for(step.timeout, self._settings),
            retry=self.retry_policy(step, step.handler_name),
        )
        logger.info("Step %s completed via %s (attempt %s)", step.id, step.handler_name, outcome.attempts)
        return StepResult.completed(
            step.id,
            outcome.output,
            attempt=outcome.attempts,
            duration_ms=_elapsed_ms(started),
        )

    async def _run_code(self, step: CodeStep, rendered: Any, run: WorkflowRun, started: float) -> StepResult:
        if step.timeout is not None and step.timeout.start_to_close:
            script_timeout = parse_duration(step.timeout.start_to_close)
        else:
            script_timeout = parse_duration(self._settings.default_script_timeout)

        payload = {"script": step.inline_script, "timeout_ms": round(script_timeout * 1000)}
        outcome = await self._substrate.invoke(
            CODE_HANDLER,
            payload,
            self.build_node_context(step, run, step_input=rendered),
            timeout=script_timeout + _SCRIPT_DEADLINE_GRACE,
            retry=self.retry_policy(step, CODE_HANDLER),
        )
        output = outcome.output.get("result") if isinstance(outcome.output, Mapping) else outcome.output
        logger.info("Step %s completed inline script (attempt %s)", step.id, outcome.attempts)
        return StepResult.completed(
            step.id,
            output,
            attempt=outcome.attempts,
            duration_ms=_elapsed_ms(started),
        )

    async def _wait_for_signal(self, step: SignalStep, run: WorkflowRun, started: float) -> StepResult:
        timeout = None
        if step.timeout is not None and step.timeout.start_to_close:
            timeout = parse_duration(step.timeout.start_to_close)

        logger.info("Step %s waiting for signal", step.id)
        try:
            await run.wait_for_signal(step.id, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise NodeTimeoutError("signal", f"No signal received for step '{step.id}' within {timeout:g}s") from exc

        if run.has_signal(step.id):
            return StepResult.completed(
                step.id,
                copy.deepcopy(run.signals[step.id]),
                duration_ms=_elapsed_ms(started),
            )
        return StepResult.skipped(step.id, CANCELLED_BEFORE_SIGNAL)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


__all__ = ["CANCELLED_BEFORE_SIGNAL", "CODE_HANDLER", "StepExecutor"]
