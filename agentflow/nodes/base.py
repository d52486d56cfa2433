from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from ..models import ExecutionLog, LogLevel, Node, NodeCategory, utc_now

if TYPE_CHECKING:
    from ..context import ExecutionContextManager

logger = logging.getLogger(__name__)

_LEVEL_ALIASES = {"warning": "warn"}


class NodeExecutionContext:
    """What a node handler sees of the run it is part of."""

    def __init__(
        self,
        *,
        manager: ExecutionContextManager,
        workflow_id: str,
        execution_id: str,
        scope_id: str,
        node_id: str,
        conversation_scope_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        log_sink: Callable[[ExecutionLog], None] | None = None,
    ) -> None:
        self.manager = manager
        self.workflow_id = workflow_id
        self.execution_id = execution_id
        self.scope_id = scope_id
        self.node_id = node_id
        self.conversation_scope_id = conversation_scope_id
        self.metadata = metadata if metadata is not None else {}
        self.events: list[dict[str, Any]] = []
        self._log_sink = log_sink

    @property
    def conversation_id(self) -> str | None:
        return self.metadata.get("conversation_id")

    @property
    def variables(self) -> dict[str, Any]:
        return self.manager.get_all_variables(self.scope_id)

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.manager.get_variable(
            self.scope_id,
            name,
            default=default,
            node_id=self.node_id,
            execution_id=self.execution_id,
        )

    def set_variable(self, name: str, value: Any, **options: Any) -> bool:
        return self.manager.set_variable(
            self.scope_id,
            name,
            value,
            node_id=self.node_id,
            execution_id=self.execution_id,
            **options,
        )

    def set_conversation_variable(self, name: str, value: Any, **options: Any) -> bool:
        target = self.conversation_scope_id or self.scope_id
        return self.manager.set_variable(
            target,
            name,
            value,
            node_id=self.node_id,
            execution_id=self.execution_id,
            **options,
        )

    def log(self, level: str, message: str, data: Any = None) -> None:
        entry = ExecutionLog(
            level=LogLevel(_LEVEL_ALIASES.get(level, level)),
            message=message,
            data=data,
            node_id=self.node_id,
        )
        if self._log_sink is not None:
            self._log_sink(entry)

    def emit(self, event: str, data: Any = None) -> None:
        self.events.append({"event": event, "data": data, "timestamp": utc_now().isoformat()})


class BaseNode(ABC):
    def __init__(self, node: Node) -> None:
        self.node = node

    @property
    def config(self) -> dict[str, Any]:
        return self.node.configuration

    @abstractmethod
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> Any:
        """Run the node. Raising marks the step as failed."""


@dataclass(slots=True)
class NodeSpec:
    type_name: str
    description: str
    node_class: type[BaseNode]
    category: NodeCategory = NodeCategory.ACTIONS
    defaults: dict[str, Any] = field(default_factory=dict)


class NodeRegistry:
    def __init__(self) -> None:
        self._nodes: dict[str, NodeSpec] = {}

    def register(self, spec: NodeSpec) -> None:
        self._nodes[spec.type_name] = spec

    def get(self, type_name: str) -> NodeSpec:
        if type_name not in self._nodes:
            raise KeyError(f"Unknown node type: {type_name}")
        return self._nodes[type_name]

    def create_node_instance(self, node: Node) -> BaseNode | None:
        spec = self._nodes.get(node.type)
        if spec is None:
            logger.error("Unknown node type: %s", node.type)
            return None
        if spec.defaults:
            node = node.model_copy(update={"configuration": {**spec.defaults, **node.configuration}})
        return spec.node_class(node)

    def list_types(self) -> list[str]:
        return sorted(self._nodes)

    def list_specs(self) -> list[dict[str, str]]:
        return [
            {
                "type": self._nodes[key].type_name,
                "category": self._nodes[key].category.value,
                "description": self._nodes[key].description,
            }
            for key in sorted(self._nodes)
        ]

    def types_by_category(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {category.value: [] for category in NodeCategory}
        for key in sorted(self._nodes):
            grouped[self._nodes[key].category.value].append(key)
        return grouped
