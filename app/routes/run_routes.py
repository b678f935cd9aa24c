from __future__ import annotations

"""Run execution, cancellation and signal delivery routes."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Response, status

from app.deps import (
    get_engine_settings,
    get_log_stream_manager,
    get_node_registry,
    get_run_store,
    get_substrate,
    get_workflow_store,
)
from app.schemas import (
    RunRequest,
    RunResponse,
    RunStateResponse,
    SignalRequest,
    SignalResponse,
    serialize_state_response,
)
from engine.orchestrator import ExecutionLog, WorkflowOrchestrator
from engine.state import WorkflowRun

logger = logging.getLogger("workflow.routes.run")

router = APIRouter(prefix="/workflows", tags=["runs"])


async def _execute_run(record, run_store, manager) -> None:
    """Drive a run to its terminal state and publish the outcome."""

    run_id = record.run_id
    manager.publish_status(run_id, "running")
    try:
        await record.orchestrator.start(record.run)
    except Exception as exc:
        logger.exception("Run %s failed: %s", run_id, exc)
        await run_store.mark_failed(run_id, str(exc))
        manager.publish_status(run_id, "failed", error=str(exc))
        return

    manager.publish_status(run_id, record.status, summary=dict(record.run.summary()))
    logger.info("Run %s %s", run_id, record.status)


async def _get_record(run_store, run_id: str):
    try:
        return await run_store.get(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/run",
    response_model=RunResponse,
    status_code=status.HTTP_200_OK,
)
async def launch_run(
    payload: RunRequest,
    response: Response,
    workflow_store=Depends(get_workflow_store),
    run_store=Depends(get_run_store),
    registry=Depends(get_node_registry),
    substrate=Depends(get_substrate),
    settings=Depends(get_engine_settings),
    manager=Depends(get_log_stream_manager),
) -> RunResponse:
    """Start a workflow run in the foreground or as a background task."""

    try:
        stored = workflow_store.get(payload.workflow_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    from app.main import RunRecord  # circular avoidance kept local

    definition = stored.definition
    run = WorkflowRun(
        workflow_id=payload.workflow_id,
        workflow_name=definition.name,
        inputs=definition.resolve_inputs(payload.inputs),
    )
    logs: list[ExecutionLog] = []

    def emit(entry: ExecutionLog) -> None:
        logs.append(entry)
        manager.publish_log(run.run_id, entry, index=len(logs) - 1)

    orchestrator = WorkflowOrchestrator(
        stored.graph,
        substrate,
        registry=registry,
        settings=settings,
        log_hook=emit,
    )
    record = RunRecord(
        run_id=run.run_id,
        workflow_id=payload.workflow_id,
        run=run,
        graph=stored.graph,
        orchestrator=orchestrator,
        logs=logs,
    )
    await run_store.create(record)

    if payload.background:
        record.task = asyncio.create_task(_execute_run(record, run_store, manager))
        response.status_code = status.HTTP_202_ACCEPTED
        return RunResponse(run_id=record.run_id, workflow_id=record.workflow_id, status=record.status)

    await _execute_run(record, run_store, manager)
    return RunResponse(
        run_id=record.run_id,
        workflow_id=record.workflow_id,
        status=record.status,
        results=dict(run.results),
    )


@router.get(
    "/runs/{run_id}",
    response_model=RunStateResponse,
    status_code=status.HTTP_200_OK,
)
async def get_run_state(
    run_id: str = Path(..., description="Run identifier"),
    run_store=Depends(get_run_store),
) -> RunStateResponse:
    """Return run status, step results and logs."""

    record = await _get_record(run_store, run_id)
    return serialize_state_response(record)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RunResponse,
    status_code=status.HTTP_200_OK,
)
async def cancel_run(
    run_id: str,
    run_store=Depends(get_run_store),
    manager=Depends(get_log_stream_manager),
) -> RunResponse:
    """Request cancellation of an active run."""

    record = await _get_record(run_store, run_id)
    if record.finished:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run '{run_id}' is already finished.",
        )

    record.cancel()
    manager.publish(run_id, {"type": "cancel", "message": "Cancellation requested"})
    logger.info("Cancellation requested for run %s", run_id)
    return RunResponse(run_id=run_id, workflow_id=record.workflow_id, status=record.status)


@router.post(
    "/runs/{run_id}/signal",
    response_model=SignalResponse,
    status_code=status.HTTP_200_OK,
)
async def deliver_signal(
    payload: SignalRequest,
    run_id: str,
    run_store=Depends(get_run_store),
) -> SignalResponse:
    """Deliver an external payload to a waiting signal step."""

    record = await _get_record(run_store, run_id)
    if record.finished:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run '{run_id}' is already finished.",
        )
    if not record.is_signal_step(payload.step_id):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Step '{payload.step_id}' is not a signal step.",
        )

    accepted = record.deliver(payload.step_id, payload.payload)
    logger.info("Signal for run %s step %s accepted=%s", run_id, payload.step_id, accepted)
    return SignalResponse(run_id=run_id, step_id=payload.step_id, accepted=accepted)
