from datetime import datetime, timedelta, timezone
from typing import Any

from agentflow.models import Connection, Node, NodeCategory, NodeMetadata, WorkflowDefinition
from agentflow.nodes import BaseNode


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class EchoNode(BaseNode):
    """Returns ``configuration['output']`` or, failing that, its own input."""

    async def execute(self, input_data: dict[str, Any], context: Any) -> Any:
        if "output" in self.config:
            return self.config["output"]
        return dict(input_data)


class FailingNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: Any) -> Any:
        raise RuntimeError(self.config.get("message", "boom"))


def make_tick_node(clock: FakeMonotonic) -> type[BaseNode]:
    class TickNode(BaseNode):
        async def execute(self, input_data: dict[str, Any], context: Any) -> Any:
            clock.advance(float(self.config.get("seconds", 1)))
            return {"ticked": self.node.id}

    return TickNode


def node(node_id: str, node_type: str = "echo", **kwargs: Any) -> Node:
    category = kwargs.pop("category", None)
    if category is None:
        category = NodeCategory.TRIGGERS if node_type in ("trigger", "webhook") else NodeCategory.ACTIONS
    metadata = NodeMetadata(
        priority=kwargs.pop("priority", 0),
        continue_on_error=kwargs.pop("continue_on_error", False),
    )
    return Node(id=node_id, type=node_type, name=kwargs.pop("name", node_id), category=category, metadata=metadata, **kwargs)


def workflow(nodes: list[Node], edges: list[tuple[str, str] | tuple[str, str, str]], **kwargs: Any) -> WorkflowDefinition:
    connections = []
    for edge in edges:
        source, target = edge[0], edge[1]
        port = edge[2] if len(edge) == 3 else "output"
        connections.append(Connection(source_node_id=source, target_node_id=target, source_port_id=port))
    return WorkflowDefinition(id=kwargs.pop("id", "wf"), name="Test workflow", nodes=nodes, connections=connections, **kwargs)


