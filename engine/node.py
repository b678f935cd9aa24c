from __future__ import annotations

"""Handler contract: definitions, invocation context and the error boundary."""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from engine.policy import HandlerRetryPolicy

NodeErrorCode = Literal[
    "VALIDATION_ERROR",
    "EXECUTION_ERROR",
    "TIMEOUT_ERROR",
    "NETWORK_ERROR",
    "PERMISSION_ERROR",
]

_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*\Z")
_VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)\Z")


class NodeError(Exception):
    """Tagged failure raised at the handler invocation boundary."""

    code: NodeErrorCode = "EXECUTION_ERROR"

    def __init__(
        self,
        node_name: str,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"[{node_name}] {message}")
        self.node_name = node_name
        self.message = message
        self.details = details or {}
        self.attempts = 1


class NodeValidationError(NodeError):
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        node_name: str,
        message: str,
        *,
        violations: Optional[list[Dict[str, str]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(node_name, message, details=details)
        self.violations = violations or []


class NodeExecutionError(NodeError):
    code = "EXECUTION_ERROR"


class NodeTimeoutError(NodeError):
    code = "TIMEOUT_ERROR"


class NodeNetworkError(NodeError):
    code = "NETWORK_ERROR"


class NodePermissionError(NodeError):
    code = "PERMISSION_ERROR"


def normalize_error(node_name: str, exc: BaseException) -> NodeError:
    """Map an arbitrary exception onto the handler error taxonomy."""

    if isinstance(exc, NodeError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return NodeTimeoutError(node_name, message)
    if isinstance(exc, PermissionError):
        return NodePermissionError(node_name, message)
    if isinstance(exc, ConnectionError):
        return NodeNetworkError(node_name, message)
    return NodeExecutionError(node_name, message)


class WorkflowMeta(BaseModel):
    id: str
    name: str


class StepMeta(BaseModel):
    id: str
    attempt: int = Field(default=1, ge=1)


class NodeContextData(BaseModel):
    """Serializable part of the context handed to a handler."""

    workflow: WorkflowMeta
    step: StepMeta
    workflow_inputs: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, Any] = Field(default_factory=dict)
    step_input: Any = Field(
        default=None,
        description="Rendered step input; only populated for inline-script steps",
    )

    def with_attempt(self, attempt: int) -> "NodeContextData":
        return self.model_copy(update={"step": StepMeta(id=self.step.id, attempt=attempt)})


class NodeLogger:
    """Per-call logger that tags lines with the step id and captures them."""

    def __init__(self, node_name: str, step_id: str) -> None:
        self._logger = logging.getLogger(f"workflow.node.{node_name}")
        self.step_id = step_id
        self.lines: list[str] = []

    def _emit(self, level: int, message: str, *args: Any) -> None:
        text = message % args if args else message
        timestamp = datetime.now(timezone.utc).isoformat()
        self.lines.append(f"[{timestamp}] [{logging.getLevelName(level)}] [{self.step_id}] {text}")
        self._logger.log(level, "[%s] %s", self.step_id, text)

    def debug(self, message: str, *args: Any) -> None:
        self._emit(logging.DEBUG, message, *args)

    def info(self, message: str, *args: Any) -> None:
        self._emit(logging.INFO, message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self._emit(logging.WARNING, message, *args)

    def error(self, message: str, *args: Any) -> None:
        self._emit(logging.ERROR, message, *args)


class NodeContext(NodeContextData):
    """Full context including the non-serializable logger."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    logger: NodeLogger


NodeCallable = Callable[[Any, NodeContext], Awaitable[Any]]


class NodeMeta(BaseModel):
    """Validated handler metadata."""

    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    version: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_PATTERN.match(value):
            raise ValueError(f"Node name '{value}' must be lowercase with hyphens")
        return value

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not _VERSION_PATTERN.match(value):
            raise ValueError(f"Node version '{value}' must be semver (e.g. 1.0.0)")
        return value


@dataclass(slots=True)
class NodeDefinition:
    """A pluggable handler registered under name and major version."""

    name: str
    description: str
    version: str
    execute: NodeCallable
    input_schema: Optional[Type[BaseModel]] = None
    output_schema: Optional[Type[BaseModel]] = None
    retry_policy: Optional[HandlerRetryPolicy] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def major_version(self) -> int:
        return int(self.version.split(".", 1)[0])


@dataclass(slots=True)
class NodeInvocationResult:
    output: Any
    logs: list[str]
    elapsed_ms: float


def define_node(
    *,
    name: str,
    description: str,
    version: str,
    execute: NodeCallable,
    input_schema: Optional[Type[BaseModel]] = None,
    output_schema: Optional[Type[BaseModel]] = None,
    retry_policy: Optional[HandlerRetryPolicy] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> NodeDefinition:
    """Factory helper that validates metadata before building a NodeDefinition."""

    NodeMeta(name=name, description=description, version=version)
    return NodeDefinition(
        name=name,
        description=description,
        version=version,
        execute=execute,
        input_schema=input_schema,
        output_schema=output_schema,
        retry_policy=retry_policy,
        metadata=metadata or {},
    )


def _violations(exc: ValidationError) -> list[Dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in error["loc"]) or "<root>", "message": error["msg"]}
        for error in exc.errors()
    ]


async def invoke_node(
    node: NodeDefinition,
    raw_input: Any,
    context: NodeContextData,
) -> NodeInvocationResult:
    """Validate input, run the handler and normalize any failure.

    Handlers with an input schema receive the validated model instance;
    handlers without one receive the raw input.
    """

    logger = NodeLogger(node.name, context.step.id)
    full_context = NodeContext(**context.model_dump(), logger=logger)

    validated: Any = raw_input
    if node.input_schema is not None:
        try:
            validated = node.input_schema.model_validate(raw_input if raw_input is not None else {})
        except ValidationError as exc:
            violations = _violations(exc)
            summary = "; ".join(f"{item['field']}: {item['message']}" for item in violations)
            raise NodeValidationError(
                node.name,
                f"Input validation failed: {summary}",
                violations=violations,
            ) from exc

    started = time.perf_counter()
    try:
        output = await node.execute(validated, full_context)
    except Exception as exc:
        raise normalize_error(node.name, exc) from exc

    return NodeInvocationResult(
        output=output,
        logs=logger.lines,
        elapsed_ms=(time.perf_counter() - started) * 1000.0,
    )


__all__ = [
    "NodeCallable",
    "NodeContext",
    "NodeContextData",
    "NodeDefinition",
    "NodeError",
    "NodeErrorCode",
    "NodeExecutionError",
    "NodeInvocationResult",
    "NodeLogger",
    "NodeMeta",
    "NodeNetworkError",
    "NodePermissionError",
    "NodeTimeoutError",
    "NodeValidationError",
    "StepMeta",
    "WorkflowMeta",
    "define_node",
    "invoke_node",
    "normalize_error",
]
