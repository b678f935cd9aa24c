from __future__ import annotations

"""Handler registry keyed by name and major version."""

import importlib
import logging
import pkgutil
import re
from types import ModuleType
from typing import Dict, Iterator

from engine.node import NodeDefinition

logger = logging.getLogger("workflow.registry")

_VERSIONED_NAME = re.compile(r"^(?P<name>[a-z][a-z0-9-]*)@v(?P<major>\d+)\Z")


class DuplicateNodeError(ValueError):
    """Raised when a name and major version pair is registered twice."""


class UnknownNodeError(KeyError):
    """Raised when a handler lookup finds nothing."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown node"


class NodeRegistry:
    """Container responsible for storing handler definitions.

    Constructed once at startup and passed to the components that need it.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, Dict[int, NodeDefinition]] = {}

    def register(self, node: NodeDefinition) -> None:
        """Register a handler under its name and major version."""

        versions = self._nodes.setdefault(node.name, {})
        major = node.major_version
        if major in versions:
            raise DuplicateNodeError(f"Node '{node.name}' v{major} is already registered.")
        versions[major] = node
        logger.info("Registered node %s@v%s", node.name, major)

    def get(self, name: str, version: int | None = None) -> NodeDefinition:
        """Return a handler; without a version the highest major wins."""

        versions = self._nodes.get(name)
        if not versions:
            raise UnknownNodeError(f"Node '{name}' is not registered.")
        if version is None:
            return versions[max(versions)]
        try:
            return versions[version]
        except KeyError as exc:
            raise UnknownNodeError(f"Node '{name}' v{version} is not registered.") from exc

    def resolve(self, handler_name: str) -> NodeDefinition:
        """Resolve ``name`` or ``name@vN`` to a handler definition."""

        match = _VERSIONED_NAME.match(handler_name)
        if match:
            return self.get(match.group("name"), int(match.group("major")))
        return self.get(handler_name)

    def has(self, handler_name: str) -> bool:
        try:
            self.resolve(handler_name)
        except UnknownNodeError:
            return False
        return True

    def activity_names(self) -> list[str]:
        """List every invocable name: each ``name@vN`` plus the bare ``name``."""

        names: list[str] = []
        for name, versions in sorted(self._nodes.items()):
            names.extend(f"{name}@v{major}" for major in sorted(versions))
            names.append(name)
        return names

    def discover(self, package: ModuleType) -> int:
        """Import every module in ``package`` and register its ``node`` attribute."""

        count = 0
        for module_info in pkgutil.iter_modules(package.__path__):
            module = importlib.import_module(f"{package.__name__}.{module_info.name}")
            node = getattr(module, "node", None)
            if isinstance(node, NodeDefinition):
                self.register(node)
                count += 1
        return count

    def __iter__(self) -> Iterator[NodeDefinition]:
        for versions in self._nodes.values():
            yield from versions.values()

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._nodes.values())


__all__ = ["DuplicateNodeError", "NodeRegistry", "UnknownNodeError"]
