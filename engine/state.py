from __future__ import annotations

"""Run state and step result models for the workflow engine."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

StepStatus = Literal["completed", "failed", "skipped"]
"""Terminal states of a step."""

RunStatus = Literal["not_started", "running", "completed", "cancelled"]
"""Lifecycle states of a workflow run."""


class DuplicateResultError(RuntimeError):
    """Raised when a second result is recorded for the same step."""


class StepResult(BaseModel):
    """Terminal outcome of a single step. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: StepStatus
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    attempt: int = Field(default=1, ge=0)
    duration_ms: float = Field(default=0.0, ge=0)
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def completed(cls, step_id: str, output: Any, *, attempt: int = 1, duration_ms: float = 0.0) -> "StepResult":
        return cls(id=step_id, status="completed", output=output, attempt=attempt, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls,
        step_id: str,
        error: str,
        *,
        error_code: str | None = None,
        attempt: int = 1,
        duration_ms: float = 0.0,
    ) -> "StepResult":
        return cls(
            id=step_id,
            status="failed",
            error=error,
            error_code=error_code,
            attempt=attempt,
            duration_ms=duration_ms,
        )

    @classmethod
    def skipped(cls, step_id: str, reason: str) -> "StepResult":
        return cls(id=step_id, status="skipped", error=reason, attempt=0)


class WorkflowRun(BaseModel):
    """One execution instance of a workflow against a fixed input set.

    Inputs are fixed at creation. Results are append-only, the cancellation
    flag only ever goes from False to True, and the first payload delivered
    for a step id is the one that is kept.
    """

    model_config = ConfigDict(frozen=False)

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str = "workflow"
    workflow_name: str = "Workflow"
    inputs: Dict[str, Any] = Field(default_factory=dict)
    results: Dict[str, StepResult] = Field(default_factory=dict)
    signals: Dict[str, Any] = Field(default_factory=dict)
    cancelled: bool = False
    status: RunStatus = "not_started"

    _changed: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    def record(self, result: StepResult) -> None:
        """Store a step's terminal result exactly once."""

        if result.id in self.results:
            raise DuplicateResultError(f"Step '{result.id}' already has a recorded result.")
        self.results[result.id] = result

    def cancel(self) -> None:
        """Set the cancellation flag. Safe to call repeatedly."""

        if not self.cancelled:
            self.cancelled = True
            self._changed.set()

    def deliver(self, step_id: str, payload: Any) -> bool:
        """Store a signal payload; returns False if one was already delivered."""

        if step_id in self.signals:
            return False
        self.signals[step_id] = payload
        self._changed.set()
        return True

    def has_signal(self, step_id: str) -> bool:
        return step_id in self.signals

    async def wait_for_signal(self, step_id: str, timeout: float | None = None) -> None:
        """Suspend until a payload for ``step_id`` arrives or the run is cancelled.

        Raises asyncio.TimeoutError if ``timeout`` elapses first.
        """

        async def _wait() -> None:
            while not (self.cancelled or step_id in self.signals):
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)

    def outputs(self) -> Dict[str, Any]:
        """Return output values of every recorded step."""

        return {step_id: result.output for step_id, result in self.results.items()}

    def summary(self) -> Mapping[str, int]:
        counts = {"completed": 0, "failed": 0, "skipped": 0}
        for result in self.results.values():
            counts[result.status] += 1
        return counts


__all__ = [
    "DuplicateResultError",
    "RunStatus",
    "StepResult",
    "StepStatus",
    "WorkflowRun",
]
