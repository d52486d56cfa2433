from .base import BaseNode, NodeExecutionContext, NodeRegistry, NodeSpec
from .builtin import register_builtin_nodes

__all__ = [
    "BaseNode",
    "NodeExecutionContext",
    "NodeRegistry",
    "NodeSpec",
    "register_builtin_nodes",
]
