from __future__ import annotations

"""Explicit audit logging within a workflow."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field

from engine.node import NodeContext, define_node
from engine.policy import HandlerRetryPolicy

audit_logger = logging.getLogger("workflow.audit")


class LogInput(BaseModel):
    message: str = Field(min_length=1)
    level: Literal["debug", "info", "warning", "error"] = "info"
    data: Any = None


class LogOutput(BaseModel):
    logged_at: str


async def execute(params: LogInput, context: NodeContext) -> Dict[str, Any]:
    timestamp = datetime.now(timezone.utc).isoformat()
    entry: Dict[str, Any] = {
        "timestamp": timestamp,
        "level": params.level,
        "message": params.message,
        "workflow_id": context.workflow.id,
        "workflow_name": context.workflow.name,
        "step_id": context.step.id,
        "attempt": context.step.attempt,
    }
    if params.data is not None:
        entry["data"] = params.data

    emit = getattr(context.logger, params.level)
    if params.data is not None:
        emit("%s %s", params.message, json.dumps(params.data, default=str))
    else:
        emit(params.message)
    audit_logger.info(json.dumps(entry, default=str))

    return {"logged_at": timestamp}


node = define_node(
    name="log",
    description="Explicit audit logging within the workflow",
    version="1.0.0",
    execute=execute,
    input_schema=LogInput,
    output_schema=LogOutput,
    retry_policy=HandlerRetryPolicy(max_attempts=1),
)

__all__ = ["LogInput", "LogOutput", "node"]
