from __future__ import annotations

"""Invocation substrate: runs a named handler with retry and a per-call deadline.

The orchestration core only depends on the ``TaskSubstrate`` protocol. A
durable backend can be plugged in behind it; ``LocalSubstrate`` runs handlers
in-process from a ``NodeRegistry``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from engine.node import NodeContextData, NodeError, NodeTimeoutError, invoke_node
from engine.policy import RetryPolicy
from engine.registry import NodeRegistry

logger = logging.getLogger("workflow.substrate")


@dataclass(slots=True)
class InvocationOutcome:
    """Settled result of a handler invocation."""

    output: Any
    logs: list[str]
    elapsed_ms: float
    attempts: int


class TaskSubstrate(Protocol):
    async def invoke(
        self,
        handler_name: str,
        payload: Any,
        context: NodeContextData,
        *,
        timeout: float,
        retry: RetryPolicy,
    ) -> InvocationOutcome:
        """Return the settled result or raise the terminal NodeError."""


class LocalSubstrate:
    """In-process substrate backed by a handler registry."""

    def __init__(
        self,
        registry: NodeRegistry,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._sleep = sleep

    async def invoke(
        self,
        handler_name: str,
        payload: Any,
        context: NodeContextData,
        *,
        timeout: float,
        retry: RetryPolicy,
    ) -> InvocationOutcome:
        node = self._registry.resolve(handler_name)
        attempt = 1
        while True:
            try:
                result = await asyncio.wait_for(
                    invoke_node(node, payload, context.with_attempt(attempt)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                error: NodeError = NodeTimeoutError(
                    node.name, f"Activity timed out after {timeout:g}s"
                )
                error.__cause__ = exc
            except NodeError as exc:
                error = exc
            else:
                return InvocationOutcome(
                    output=result.output,
                    logs=result.logs,
                    elapsed_ms=result.elapsed_ms,
                    attempts=attempt,
                )

            error.attempts = attempt
            if attempt >= retry.maximum_attempts or not retry.is_retryable(error.code):
                logger.warning(
                    "Step %s: %s failed after %s attempt(s): %s",
                    context.step.id,
                    handler_name,
                    attempt,
                    error,
                )
                raise error

            delay = retry.delay_for(attempt)
            logger.info(
                "Step %s: retrying %s in %.3fs (attempt %s/%s)",
                context.step.id,
                handler_name,
                delay,
                attempt + 1,
                retry.maximum_attempts,
            )
            await self._sleep(delay)
            attempt += 1


__all__ = ["InvocationOutcome", "LocalSubstrate", "TaskSubstrate"]
