from __future__ import annotations

"""Duration parsing and retry/timeout policy translation."""

import re
from typing import Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from engine.config import EngineSettings, get_settings

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$", re.IGNORECASE)

_UNIT_SECONDS = {
    "": 0.001,
    "ms": 0.001,
    "msec": 0.001,
    "msecs": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}


def parse_duration(value: str | int | float) -> float:
    """Convert a duration such as ``"5s"``, ``"2 hours"`` or ``250`` to seconds.

    Bare numbers, and strings without a unit, are milliseconds.
    """

    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value) / 1000.0

    match = _DURATION_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    try:
        factor = _UNIT_SECONDS[unit.lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown duration unit '{unit}' in {value!r}") from exc
    return float(amount) * factor


class StepTimeout(BaseModel):
    """Per-step timeout block (``timeout.startToClose``)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    start_to_close: str | None = Field(default=None, alias="startToClose")

    @field_validator("start_to_close")
    @classmethod
    def _check_duration(cls, value: str | None) -> str | None:
        if value is not None:
            parse_duration(value)
        return value


class StepRetry(BaseModel):
    """Per-step retry block as declared in a workflow document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    count: int | None = Field(default=None, ge=0, description="Retries after the first attempt")
    maximum_attempts: int | None = Field(default=None, ge=1, alias="maximumAttempts")
    initial_interval: str | None = Field(default=None, alias="initialInterval")
    backoff_coefficient: float | None = Field(default=None, ge=1.0, alias="backoffCoefficient")

    @field_validator("initial_interval")
    @classmethod
    def _check_duration(cls, value: str | None) -> str | None:
        if value is not None:
            parse_duration(value)
        return value


class HandlerRetryPolicy(BaseModel):
    """Default retry policy a handler may declare for itself.

    Intervals are seconds. Unset fields fall back to engine settings.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int | None = Field(default=None, ge=1)
    initial_interval: float | None = Field(default=None, ge=0)
    maximum_interval: float | None = Field(default=None, ge=0)
    backoff_coefficient: float | None = Field(default=None, ge=1.0)
    non_retryable_error_codes: Tuple[str, ...] = ()


class RetryPolicy(BaseModel):
    """Concrete policy handed to the invocation substrate."""

    model_config = ConfigDict(frozen=True)

    initial_interval: float = Field(ge=0)
    backoff_coefficient: float = Field(ge=1.0)
    maximum_interval: float = Field(ge=0)
    maximum_attempts: int = Field(ge=1)
    non_retryable_error_codes: Tuple[str, ...] = ()

    def delay_for(self, failed_attempt: int) -> float:
        """Return the backoff delay after the given (1-based) failed attempt."""

        delay = self.initial_interval * (self.backoff_coefficient ** (failed_attempt - 1))
        return min(delay, self.maximum_interval)

    def is_retryable(self, error_code: str) -> bool:
        return error_code not in self.non_retryable_error_codes


def retry_policy_for(
    step_retry: StepRetry | None,
    handler_policy: HandlerRetryPolicy | None = None,
    settings: EngineSettings | None = None,
) -> RetryPolicy:
    """Translate a step's retry block into a substrate retry policy.

    A declared step block wins. Otherwise the handler's own default policy is
    used, and engine settings fill whatever remains unset.
    """

    settings = settings or get_settings()
    ceiling = parse_duration(settings.max_backoff_interval)
    non_retryable = handler_policy.non_retryable_error_codes if handler_policy else ()

    if step_retry is not None:
        if step_retry.maximum_attempts is not None:
            attempts = step_retry.maximum_attempts
        elif step_retry.count is not None:
            attempts = step_retry.count + 1
        else:
            attempts = settings.default_maximum_attempts
        return RetryPolicy(
            initial_interval=parse_duration(
                step_retry.initial_interval or settings.default_initial_interval
            ),
            backoff_coefficient=step_retry.backoff_coefficient or settings.default_backoff_coefficient,
            maximum_interval=ceiling,
            maximum_attempts=attempts,
            non_retryable_error_codes=non_retryable,
        )

    if handler_policy is not None:
        initial = handler_policy.initial_interval
        maximum = handler_policy.maximum_interval
        return RetryPolicy(
            initial_interval=(
                initial if initial is not None else parse_duration(settings.default_initial_interval)
            ),
            backoff_coefficient=handler_policy.backoff_coefficient or settings.default_backoff_coefficient,
            maximum_interval=maximum if maximum is not None else ceiling,
            maximum_attempts=handler_policy.max_attempts or settings.default_maximum_attempts,
            non_retryable_error_codes=non_retryable,
        )

    return RetryPolicy(
        initial_interval=parse_duration(settings.default_initial_interval),
        backoff_coefficient=settings.default_backoff_coefficient,
        maximum_interval=ceiling,
        maximum_attempts=settings.default_maximum_attempts,
    )


def timeout_for(step_timeout: StepTimeout | None, settings: EngineSettings | None = None) -> float:
    """Return the per-call deadline in seconds for a step."""

    settings = settings or get_settings()
    if step_timeout is not None and step_timeout.start_to_close:
        return parse_duration(step_timeout.start_to_close)
    return parse_duration(settings.default_step_timeout)


__all__ = [
    "HandlerRetryPolicy",
    "RetryPolicy",
    "StepRetry",
    "StepTimeout",
    "parse_duration",
    "retry_policy_for",
    "timeout_for",
]
