from __future__ import annotations

"""Runs inline scripts for code-kind steps.

The rendered step input reaches the script through ``context.step_input``
rather than the handler payload, which only carries the script and its cap.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator

from engine.config import get_settings
from engine.node import NodeContext, define_node
from engine.policy import HandlerRetryPolicy, parse_duration
from engine.sandbox import ScriptRunner


def _default_timeout_ms() -> int:
    return round(parse_duration(get_settings().default_script_timeout) * 1000)


class CodeInput(BaseModel):
    script: str = Field(min_length=1)
    timeout_ms: int = Field(default_factory=_default_timeout_ms, ge=1)

    @field_validator("timeout_ms")
    @classmethod
    def _check_ceiling(cls, value: int) -> int:
        ceiling = round(parse_duration(get_settings().max_script_timeout) * 1000)
        if value > ceiling:
            raise ValueError(f"timeout_ms must not exceed {ceiling}")
        return value


class CodeOutput(BaseModel):
    result: Any = None
    logs: list[str]
    elapsed_ms: float


_runner = ScriptRunner()


async def execute(params: CodeInput, context: NodeContext) -> Dict[str, Any]:
    context.logger.info("Running inline script (timeout %sms)", params.timeout_ms)
    outcome = await _runner.run(
        params.script,
        timeout=params.timeout_ms / 1000.0,
        step_input=context.step_input,
        inputs=context.workflow_inputs,
        step_results=context.step_results,
        node_name="code",
    )
    context.logger.info("Script finished in %.1fms", outcome.elapsed_ms)
    return {"result": outcome.result, "logs": outcome.logs, "elapsed_ms": outcome.elapsed_ms}


node = define_node(
    name="code",
    description="Execute an inline script in the sandbox",
    version="1.0.0",
    execute=execute,
    input_schema=CodeInput,
    output_schema=CodeOutput,
    retry_policy=HandlerRetryPolicy(max_attempts=1),
)

__all__ = ["CodeInput", "CodeOutput", "node"]
