from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidStatusTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    AI_RESPONSE = "ai_response"
    HUMAN_HANDOFF = "human_handoff"
    INTEGRATION = "integration"
    WAIT = "wait"
    WEBHOOK = "webhook"
    VARIABLE = "variable"
    LOOP = "loop"


class NodeCategory(str, Enum):
    TRIGGERS = "triggers"
    CONDITIONS = "conditions"
    ACTIONS = "actions"
    INTEGRATIONS = "integrations"
    RESPONSES = "responses"


class NodeMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    priority: int = 0
    continue_on_error: bool = Field(default=False, alias="continueOnError")


class Node(BaseModel):
    id: str
    type: str
    name: str = ""
    category: NodeCategory = NodeCategory.ACTIONS
    configuration: dict[str, Any] = Field(default_factory=dict)
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Connection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_node_id: str = Field(alias="sourceNodeId")
    source_port_id: str = Field(default="output", alias="sourcePortId")
    target_node_id: str = Field(alias="targetNodeId")
    target_port_id: str = Field(default="input", alias="targetPortId")


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class WorkflowVariable(BaseModel):
    name: str
    type: VariableType | None = None
    default_value: Any = None
    description: str = ""
    readonly: bool = False


class WorkflowMetadata(BaseModel):
    created_by: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class WorkflowDefinition(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    variables: list[WorkflowVariable] = Field(default_factory=list)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.category == NodeCategory.TRIGGERS]

    def outgoing(self, node_id: str) -> list[Connection]:
        return [conn for conn in self.connections if conn.source_node_id == node_id]

    def incoming(self, node_id: str) -> list[Connection]:
        return [conn for conn in self.connections if conn.target_node_id == node_id]


class ValidationIssue(BaseModel):
    type: str
    message: str
    severity: str = "error"
    node_id: str | None = None
    connection_id: str | None = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


class ScopeType(str, Enum):
    GLOBAL = "global"
    WORKFLOW = "workflow"
    CONVERSATION = "conversation"
    SESSION = "session"
    LOCAL = "local"


class ContextVariable(BaseModel):
    name: str
    value: Any = None
    type: VariableType = VariableType.STRING
    scope: str
    readonly: bool = False
    encrypted: bool = False
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ContextScope(BaseModel):
    id: str
    name: str
    type: ScopeType
    parent_id: str | None = None
    children: set[str] = Field(default_factory=set)
    variables: dict[str, ContextVariable] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class AccessAction(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class VariableAccessLog(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    action: AccessAction
    variable_name: str
    scope: str
    node_id: str | None = None
    execution_id: str | None = None
    old_value: Any = None
    new_value: Any = None


class ContextSnapshot(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    scopes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    variables: dict[str, dict[str, ContextVariable]] = Field(default_factory=dict)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


_ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    # pending -> failed covers runs rejected by validation before they start.
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.CANCELLED,
    },
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ExecutionLog(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel
    message: str
    data: Any = None
    node_id: str | None = None


class ExecutionStep(BaseModel):
    node_id: str
    node_name: str
    node_type: str
    status: StepStatus = StepStatus.PENDING
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration_ms: float | None = None
    input: Any = None
    output: Any = None
    error: str | None = None
    logs: list[ExecutionLog] = Field(default_factory=list)


class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    deployment_id: str | None = None
    conversation_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration_ms: float | None = None
    steps: list[ExecutionStep] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    logs: list[ExecutionLog] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    validation: ValidationResult | None = None

    def transition(self, target: ExecutionStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidStatusTransition(self.status, target)
        self.status = target

    def step_for(self, node_id: str) -> ExecutionStep | None:
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None


class ExecutionOptions(BaseModel):
    timeout: float | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    debug: bool = False
    breakpoints: list[str] = Field(default_factory=list)
    plan_strategy: str | None = None


class RunRequest(BaseModel):
    input_data: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = None
