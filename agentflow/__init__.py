from .context import ExecutionContextManager
from .engine import WorkflowEngine
from .models import (
    Connection,
    ExecutionOptions,
    ExecutionStatus,
    Node,
    WorkflowDefinition,
    WorkflowExecution,
)
from .nodes import NodeRegistry, register_builtin_nodes
from .planner import build_execution_plan
from .validator import validate_workflow

__all__ = [
    "Connection",
    "ExecutionContextManager",
    "ExecutionOptions",
    "ExecutionStatus",
    "Node",
    "NodeRegistry",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "build_execution_plan",
    "register_builtin_nodes",
    "validate_workflow",
]
