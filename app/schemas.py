from __future__ import annotations

"""Request and response schemas for the workflow API."""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from engine.graph import WorkflowDefinition
from engine.orchestrator import ExecutionLog
from engine.state import StepResult


# Workflow Schemas -------------------------------------------------------------


class WorkflowCreateRequest(WorkflowDefinition):
    """Payload for POST /workflows."""

    id: str = Field(min_length=1)


class WorkflowCreateResponse(BaseModel):
    workflow_id: str
    execution_order: List[str]
    message: str = "Workflow registered"


# Run Schemas ------------------------------------------------------------------


class RunRequest(BaseModel):
    """Payload for POST /workflows/run."""

    workflow_id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    background: bool = False


class RunResponse(BaseModel):
    """Response returned when a run is scheduled or completed."""

    run_id: str
    workflow_id: str
    status: str
    results: Dict[str, StepResult] = Field(default_factory=dict)


class RunStateResponse(BaseModel):
    """Response for GET /workflows/runs/{run_id}."""

    run_id: str
    workflow_id: str
    status: str
    inputs: Dict[str, Any]
    results: Dict[str, StepResult]
    summary: Dict[str, int]
    logs: List[ExecutionLog]
    error: str | None = None


class SignalRequest(BaseModel):
    """Payload for POST /workflows/runs/{run_id}/signal."""

    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    payload: Any = None


class SignalResponse(BaseModel):
    run_id: str
    step_id: str
    accepted: bool


def serialize_state_response(run_record) -> RunStateResponse:
    """Convert an internal RunRecord to API schema."""

    run = run_record.run
    return RunStateResponse(
        run_id=run_record.run_id,
        workflow_id=run_record.workflow_id,
        status=run_record.status,
        inputs=run.inputs,
        results=dict(run.results),
        summary=dict(run.summary()),
        logs=list(run_record.logs),
        error=run_record.error,
    )


__all__ = [
    "RunRequest",
    "RunResponse",
    "RunStateResponse",
    "SignalRequest",
    "SignalResponse",
    "WorkflowCreateRequest",
    "WorkflowCreateResponse",
    "serialize_state_response",
]
