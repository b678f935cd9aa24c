from __future__ import annotations

"""FastAPI application factory and runtime stores."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI

import nodes
from engine.config import EngineSettings, get_settings
from engine.graph import SignalStep, WorkflowDefinition, WorkflowGraph
from engine.orchestrator import ExecutionLog, WorkflowOrchestrator
from engine.registry import NodeRegistry
from engine.state import WorkflowRun
from engine.substrate import LocalSubstrate
from app.routes import run_routes, workflow_routes, ws_routes
from app.ws import LogStreamManager

logger = logging.getLogger("workflow.app")

TERMINAL_STATUSES = frozenset({"completed", "cancelled", "failed"})


def configure_logging(level: str = "INFO") -> None:
    """Configure basic logging for the service."""

    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class StoredWorkflow:
    definition: WorkflowDefinition
    graph: WorkflowGraph


class WorkflowStore:
    """In-memory store for registered workflow definitions."""

    def __init__(self) -> None:
        self._workflows: Dict[str, StoredWorkflow] = {}

    def save(self, workflow_id: str, definition: WorkflowDefinition, graph: WorkflowGraph) -> None:
        self._workflows[workflow_id] = StoredWorkflow(definition=definition, graph=graph)

    def get(self, workflow_id: str) -> StoredWorkflow:
        try:
            return self._workflows[workflow_id]
        except KeyError as exc:
            raise KeyError(f"Workflow '{workflow_id}' not found.") from exc

    def exists(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows


@dataclass
class RunRecord:
    """Tracks a run, the orchestrator driving it and its step logs."""

    run_id: str
    workflow_id: str
    run: WorkflowRun
    graph: WorkflowGraph
    orchestrator: WorkflowOrchestrator
    logs: list[ExecutionLog] = field(default_factory=list)
    error: str | None = None
    task: asyncio.Task[Any] | None = None

    @property
    def status(self) -> str:
        return "failed" if self.error else self.run.status

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_signal_step(self, step_id: str) -> bool:
        return isinstance(self.graph.get_step(step_id), SignalStep)

    def cancel(self) -> None:
        # Background runs may not have reached the orchestrator yet.
        if self.orchestrator.status == "not_started":
            self.run.cancel()
        else:
            self.orchestrator.cancel()

    def deliver(self, step_id: str, payload: Any) -> bool:
        if self.orchestrator.status == "not_started":
            return self.run.deliver(step_id, payload)
        return self.orchestrator.deliver(step_id, payload)


class RunStore:
    """In-memory store for workflow run records."""

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    async def create(self, record: RunRecord) -> None:
        async with self._lock_for(record.run_id):
            self._runs[record.run_id] = record

    async def get(self, run_id: str) -> RunRecord:
        async with self._lock_for(run_id):
            try:
                return self._runs[run_id]
            except KeyError as exc:
                raise KeyError(f"Run '{run_id}' not found.") from exc

    async def mark_failed(self, run_id: str, error: str) -> None:
        async with self._lock_for(run_id):
            record = self._runs.get(run_id)
            if not record:
                raise KeyError(f"Run '{run_id}' not found.")
            record.error = error


def create_app(
    *,
    settings: EngineSettings | None = None,
    registry: NodeRegistry | None = None,
) -> FastAPI:
    """Construct the FastAPI application.

    Without an explicit registry the built-in handlers are discovered from
    the ``nodes`` package.
    """

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    if registry is None:
        registry = NodeRegistry()
        registry.discover(nodes)

    log_stream_manager = LogStreamManager()

    app = FastAPI(title="Workflow Engine", version="0.1.0")

    app.state.settings = settings
    app.state.node_registry = registry
    app.state.substrate = LocalSubstrate(registry)
    app.state.workflow_store = WorkflowStore()
    app.state.run_store = RunStore()
    app.state.log_stream_manager = log_stream_manager

    @app.on_event("startup")
    async def _startup() -> None:
        log_stream_manager.bind_loop(asyncio.get_running_loop())
        logger.info("Workflow service starting up with %s handler(s).", len(registry))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info("Workflow service shutting down.")

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, Any]:
        """Liveness check listing the registered handlers."""

        return {"status": "ok", "handlers": registry.activity_names()}

    app.include_router(workflow_routes.router)
    app.include_router(run_routes.router)
    app.include_router(ws_routes.router)

    return app


app = create_app()


__all__ = [
    "RunRecord",
    "RunStore",
    "StoredWorkflow",
    "WorkflowStore",
    "app",
    "configure_logging",
    "create_app",
]
