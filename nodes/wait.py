from __future__ import annotations

"""Pause workflow execution for a fixed duration."""

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Union

from pydantic import BaseModel, Field, field_validator

from engine.node import NodeContext, define_node
from engine.policy import HandlerRetryPolicy, parse_duration

_WAIT_DURATION = re.compile(r"^\d+[smhd]\Z")


class WaitInput(BaseModel):
    duration: Union[str, float] = Field(description="'5s', '1m', '2h', '1d' or milliseconds")

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: Union[str, float]) -> Union[str, float]:
        if isinstance(value, str):
            if not _WAIT_DURATION.match(value):
                raise ValueError("Must be format: 5s, 1m, 2h, or 1d")
        elif value < 0:
            raise ValueError("Duration must not be negative")
        return value


class WaitOutput(BaseModel):
    waited_for_ms: float
    resumed_at: str


async def execute(params: WaitInput, context: NodeContext) -> Dict[str, Any]:
    seconds = parse_duration(params.duration)
    context.logger.info("Waiting for %sms (%s)", round(seconds * 1000), params.duration)

    started = time.perf_counter()
    await asyncio.sleep(seconds)
    waited = (time.perf_counter() - started) * 1000.0

    resumed_at = datetime.now(timezone.utc).isoformat()
    context.logger.info("Wait completed. Resumed at %s", resumed_at)
    return {"waited_for_ms": waited, "resumed_at": resumed_at}


node = define_node(
    name="wait",
    description="Pause workflow execution for a specified duration",
    version="1.0.0",
    execute=execute,
    input_schema=WaitInput,
    output_schema=WaitOutput,
    retry_policy=HandlerRetryPolicy(max_attempts=1),
)

__all__ = ["WaitInput", "WaitOutput", "node"]
