from __future__ import annotations

"""Step definitions and the dependency graph that orders them."""

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, Iterable, Iterator, Literal, Mapping, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from engine.policy import StepRetry, StepTimeout

StepKind = Literal["activity", "code", "signal"]

# Field names accepted from older workflow documents.
_LEGACY_KEYS = {
    "type": "kind",
    "activity": "handlerName",
    "code": "inlineScript",
    "when": "condition",
}


class GraphError(ValueError):
    """Base class for fatal graph validation failures."""


class DuplicateStepId(GraphError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"Duplicate step ID: {step_id}")
        self.step_id = step_id


class UnknownDependency(GraphError):
    def __init__(self, step_id: str, dependency: str) -> None:
        super().__init__(f"Step '{step_id}' depends on undefined step '{dependency}'")
        self.step_id = step_id
        self.dependency = dependency


class CyclicDependency(GraphError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cycle detected in workflow steps: {' -> '.join(cycle)}")
        self.cycle = cycle


class InvalidStepDefinition(GraphError):
    """Raised when a step record is structurally invalid."""


class _StepBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    depends_on: Tuple[str, ...] = Field(default=(), alias="dependsOn")
    input: Any = None
    condition: str | None = None
    timeout: StepTimeout | None = None
    retry: StepRetry | None = None


class ActivityStep(_StepBase):
    """Invokes a registered handler through the invocation substrate."""

    kind: Literal["activity"] = "activity"
    handler_name: str = Field(min_length=1, alias="handlerName")


class CodeStep(_StepBase):
    """Runs an inline script in the sandbox."""

    kind: Literal["code"] = "code"
    inline_script: str = Field(min_length=1, alias="inlineScript")


class SignalStep(_StepBase):
    """Suspends until an external payload addressed to the step arrives."""

    kind: Literal["signal"] = "signal"


StepDefinition = Annotated[Union[ActivityStep, CodeStep, SignalStep], Field(discriminator="kind")]

_STEP_ADAPTER: TypeAdapter[StepDefinition] = TypeAdapter(StepDefinition)


def parse_step(data: Mapping[str, Any] | _StepBase) -> StepDefinition:
    """Build a typed step definition from a raw record."""

    if isinstance(data, _StepBase):
        return data  # type: ignore[return-value]

    payload = dict(data)
    for legacy, current in _LEGACY_KEYS.items():
        if legacy in payload and current not in payload:
            payload[current] = payload.pop(legacy)
    payload.setdefault("kind", "activity")

    try:
        return _STEP_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        step_id = payload.get("id", "<unnamed>")
        problems = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"][1:]) or "kind"
            problems.append(f"{location}: {error['msg']}")
        raise InvalidStepDefinition(f"Invalid step '{step_id}': {'; '.join(problems)}") from exc


class WorkflowDefinition(BaseModel):
    """Top-level workflow document handed over by the loader."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: str | None = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    steps: list[StepDefinition] = Field(min_length=1)

    @field_validator("steps", mode="before")
    @classmethod
    def _parse_steps(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [parse_step(item) for item in value]
        return value

    def resolve_inputs(self, overrides: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        """Merge run-time input overrides over the declared defaults."""

        inputs = dict(self.inputs)
        inputs.update(overrides or {})
        return inputs


@dataclass
class WorkflowGraph:
    """Validated DAG of steps with a deterministic execution order."""

    steps: Dict[str, StepDefinition]
    order: list[str]
    dependencies: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    dependents: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    _closure_cache: Dict[Tuple[str, str], Tuple[str, ...]] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, steps: Iterable[Mapping[str, Any] | StepDefinition]) -> "WorkflowGraph":
        """Validate steps and compute their execution order.

        Raises DuplicateStepId, UnknownDependency or CyclicDependency before
        anything can run.
        """

        step_map: Dict[str, StepDefinition] = {}
        for raw in steps:
            step = parse_step(raw)
            if step.id in step_map:
                raise DuplicateStepId(step.id)
            step_map[step.id] = step

        dependencies: Dict[str, Tuple[str, ...]] = {}
        dependents: Dict[str, list[str]] = {step_id: [] for step_id in step_map}
        for step in step_map.values():
            unique = tuple(dict.fromkeys(step.depends_on))
            for dep_id in unique:
                if dep_id not in step_map:
                    raise UnknownDependency(step.id, dep_id)
                dependents[dep_id].append(step.id)
            dependencies[step.id] = unique

        order = _topological_order(list(step_map), dependencies)
        return cls(
            steps=step_map,
            order=order,
            dependencies=dependencies,
            dependents={key: tuple(value) for key, value in dependents.items()},
        )

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "WorkflowGraph":
        return cls.build(definition.steps)

    def execution_order(self) -> list[str]:
        """Return step ids so that every step follows all of its dependencies."""

        return list(self.order)

    def get_step(self, step_id: str) -> StepDefinition | None:
        return self.steps.get(step_id)

    def dependencies_of(self, step_id: str) -> Tuple[str, ...]:
        """Return direct and transitive dependencies, in execution order."""

        return self._closure(step_id, self.dependencies)

    def dependents_of(self, step_id: str) -> Tuple[str, ...]:
        """Return direct and transitive dependents, in execution order."""

        return self._closure(step_id, self.dependents)

    def _closure(self, step_id: str, edges: Dict[str, Tuple[str, ...]]) -> Tuple[str, ...]:
        if step_id not in self.steps:
            return ()
        key = (step_id, "deps" if edges is self.dependencies else "dependents")
        cached = self._closure_cache.get(key)
        if cached is not None:
            return cached

        seen: set[str] = set()
        pending = list(edges.get(step_id, ()))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(edges.get(current, ()))

        closure = tuple(step for step in self.order if step in seen)
        self._closure_cache[key] = closure
        return closure


def _topological_order(step_ids: list[str], dependencies: Dict[str, Tuple[str, ...]]) -> list[str]:
    """Depth-first ordering that visits steps and their dependencies in declaration order."""

    order: list[str] = []
    done: set[str] = set()
    path: list[str] = []
    on_path: set[str] = set()

    for root in step_ids:
        if root in done:
            continue
        path.append(root)
        on_path.add(root)
        # One iterator over remaining dependencies per entry of ``path``.
        pending: list[Iterator[str]] = [iter(dependencies.get(root, ()))]
        while pending:
            dep_id = next(pending[-1], None)
            if dep_id is None:
                pending.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                order.append(finished)
            elif dep_id in done:
                continue
            elif dep_id in on_path:
                start = path.index(dep_id)
                raise CyclicDependency(path[start:] + [dep_id])
            else:
                path.append(dep_id)
                on_path.add(dep_id)
                pending.append(iter(dependencies.get(dep_id, ())))
    return order


__all__ = [
    "ActivityStep",
    "CodeStep",
    "CyclicDependency",
    "DuplicateStepId",
    "GraphError",
    "InvalidStepDefinition",
    "SignalStep",
    "StepDefinition",
    "StepKind",
    "UnknownDependency",
    "WorkflowDefinition",
    "WorkflowGraph",
    "parse_step",
]
