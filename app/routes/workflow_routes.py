from __future__ import annotations

"""Workflow definition routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.deps import get_node_registry, get_workflow_store
from app.schemas import WorkflowCreateRequest, WorkflowCreateResponse
from engine.graph import ActivityStep, GraphError, WorkflowGraph

logger = logging.getLogger("workflow.routes.workflow")

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.post(
    "",
    response_model=WorkflowCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_workflow(
    payload: WorkflowCreateRequest,
    workflow_store=Depends(get_workflow_store),
    registry=Depends(get_node_registry),
) -> WorkflowCreateResponse:
    """Register a workflow definition after validating its graph."""

    if workflow_store.exists(payload.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Workflow '{payload.id}' already exists.",
        )

    try:
        graph = WorkflowGraph.from_definition(payload)
    except GraphError as exc:
        logger.warning("Workflow %s rejected: %s", payload.id, exc)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    unknown = sorted(
        {
            step.handler_name
            for step in graph.steps.values()
            if isinstance(step, ActivityStep) and not registry.has(step.handler_name)
        }
    )
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown handler(s): {', '.join(unknown)}",
        )

    workflow_store.save(payload.id, payload, graph)
    logger.info("Registered workflow %s (%s steps)", payload.id, len(graph.order))
    return WorkflowCreateResponse(workflow_id=payload.id, execution_order=graph.execution_order())
