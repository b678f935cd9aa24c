from __future__ import annotations

"""Workflow orchestrator: drives a run through the graph's execution order."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field

from engine.config import EngineSettings
from engine.executor import StepExecutor
from engine.graph import WorkflowDefinition, WorkflowGraph
from engine.registry import NodeRegistry
from engine.state import RunStatus, StepResult, WorkflowRun
from engine.substrate import LocalSubstrate, TaskSubstrate

logger = logging.getLogger("workflow.orchestrator")

ExecutionLogStatus = Literal["completed", "failed", "skipped", "cancelled"]


class OrchestratorStateError(RuntimeError):
    """Raised when an entry point is used in the wrong lifecycle state."""


class ExecutionLog(BaseModel):
    """Structured log entry for a recorded step."""

    step_id: str
    status: ExecutionLogStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str | None = None
    error: str | None = None


class WorkflowOrchestrator:
    """Runs steps strictly one at a time in execution order.

    Lifecycle: ``not_started`` -> ``running`` -> ``completed`` | ``cancelled``.
    Individual step failures never reject the run; the only early exit is
    cancellation, checked before each step is dispatched.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        substrate: TaskSubstrate,
        *,
        registry: NodeRegistry | None = None,
        settings: EngineSettings | None = None,
        log_hook: Optional[Callable[[ExecutionLog], None]] = None,
    ) -> None:
        self._graph = graph
        self._executor = StepExecutor(graph, substrate, registry=registry, settings=settings)
        self._log_hook = log_hook
        self._run: WorkflowRun | None = None

    @classmethod
    def from_definition(
        cls,
        definition: WorkflowDefinition,
        registry: NodeRegistry,
        *,
        substrate: TaskSubstrate | None = None,
        settings: EngineSettings | None = None,
        log_hook: Optional[Callable[[ExecutionLog], None]] = None,
    ) -> "WorkflowOrchestrator":
        """Build the graph and an in-process substrate from a workflow definition."""

        return cls(
            WorkflowGraph.from_definition(definition),
            substrate or LocalSubstrate(registry),
            registry=registry,
            settings=settings,
            log_hook=log_hook,
        )

    @property
    def status(self) -> RunStatus:
        return self._run.status if self._run is not None else "not_started"

    @property
    def current_run(self) -> WorkflowRun | None:
        return self._run

    async def start(self, run: WorkflowRun) -> Dict[str, StepResult]:
        """Execute the run and return the full result map."""

        if self._run is not None or run.status != "not_started":
            raise OrchestratorStateError("Orchestrator has already started a run")

        self._run = run
        run.status = "running"
        order = self._graph.execution_order()
        logger.info("Run %s started: %s (%s steps)", run.run_id, run.workflow_name, len(order))

        for step_id in order:
            if run.cancelled:
                logger.info("Run %s cancelled before step %s", run.run_id, step_id)
                self._emit(ExecutionLog(step_id=step_id, status="cancelled", message="Run cancelled"))
                run.status = "cancelled"
                break
            result = await self._executor.execute(step_id, run)
            run.record(result)
            self._emit(self._log_for(result))
        else:
            run.status = "completed"

        logger.info("Run %s %s: %s", run.run_id, run.status, dict(run.summary()))
        return dict(run.results)

    def run(self, workflow_run: WorkflowRun) -> Dict[str, StepResult]:
        """Synchronous wrapper for non-event-loop callers."""

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.start(workflow_run))
        raise RuntimeError("WorkflowOrchestrator.run cannot be called from an active event loop; use start")

    def cancel(self) -> None:
        """Request cancellation. Idempotent; a dispatched step may finish."""

        self._require_started().cancel()

    def deliver(self, step_id: str, payload: Any) -> bool:
        """Deliver a signal payload; only the first delivery per step is kept."""

        accepted = self._require_started().deliver(step_id, payload)
        if not accepted:
            logger.info("Ignoring repeated signal for step %s", step_id)
        return accepted

    def _require_started(self) -> WorkflowRun:
        if self._run is None:
            raise OrchestratorStateError("No run has been started")
        return self._run

    def _emit(self, entry: ExecutionLog) -> None:
        if self._log_hook:
            self._log_hook(entry)

    @staticmethod
    def _log_for(result: StepResult) -> ExecutionLog:
        if result.status == "completed":
            message = f"Step completed in {result.duration_ms:.1f}ms (attempt {result.attempt})"
            return ExecutionLog(step_id=result.id, status="completed", message=message)
        if result.status == "failed":
            return ExecutionLog(step_id=result.id, status="failed", message="Step failed", error=result.error)
        return ExecutionLog(step_id=result.id, status="skipped", message=result.error)


__all__ = [
    "ExecutionLog",
    "ExecutionLogStatus",
    "OrchestratorStateError",
    "WorkflowOrchestrator",
]
