"""Built-in workflow handlers.

Each module exposes a module-level ``node`` definition that
``NodeRegistry.discover`` registers at startup.
"""

from nodes.code import node as code_node
from nodes.log import node as log_node
from nodes.wait import node as wait_node

__all__ = [
    "code_node",
    "log_node",
    "wait_node",
]
