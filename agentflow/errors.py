from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ExecutionStatus, ValidationResult


class WorkflowError(Exception):
    """Base class for engine errors."""


class WorkflowValidationError(WorkflowError):
    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        messages = ", ".join(issue.message for issue in result.errors)
        super().__init__(f"Workflow validation failed: {messages}")


class PlanningError(WorkflowError):
    pass


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class NodeExecutionError(WorkflowError):
    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(message)


class UnknownNodeTypeError(NodeExecutionError):
    def __init__(self, node_id: str, node_type: str) -> None:
        self.node_type = node_type
        super().__init__(node_id, f"Unknown node type: {node_type}")


class ExecutionTimeoutError(WorkflowError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Workflow execution timeout after {timeout:g}s")


class ExecutionCancelledError(WorkflowError):
    def __init__(self) -> None:
        super().__init__("Workflow execution cancelled")


class InvalidStatusTransition(WorkflowError):
    def __init__(self, current: ExecutionStatus, target: ExecutionStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move execution from {current.value} to {target.value}")


class ContextError(Exception):
    pass


class ScopeNotFoundError(ContextError):
    def __init__(self, scope_id: str) -> None:
        self.scope_id = scope_id
        super().__init__(f"Scope {scope_id} not found")


class ReadonlyVariableError(ContextError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Variable {name} is readonly")


class CodecError(ContextError):
    pass


class PersistenceError(Exception):
    pass
