import os
import tempfile

import pytest

# The API module builds its SQLite store at import time.
os.environ.setdefault("AGENTFLOW_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="agentflow-"), "api.db"))

from agentflow.context import ExecutionContextManager  # noqa: E402
from agentflow.engine import WorkflowEngine  # noqa: E402
from agentflow.nodes import NodeRegistry, NodeSpec, register_builtin_nodes  # noqa: E402
from agentflow.store import InMemoryStore  # noqa: E402

from .helpers import EchoNode, FailingNode, FakeMonotonic, FakeUtcClock, make_tick_node  # noqa: E402


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


@pytest.fixture
def registry(monotonic: FakeMonotonic) -> NodeRegistry:
    registry = NodeRegistry()
    register_builtin_nodes(registry)
    registry.register(NodeSpec(type_name="echo", description="test echo", node_class=EchoNode))
    registry.register(NodeSpec(type_name="fail", description="test failure", node_class=FailingNode))
    registry.register(NodeSpec(type_name="tick", description="test clock", node_class=make_tick_node(monotonic)))
    return registry


@pytest.fixture
def manager() -> ExecutionContextManager:
    return ExecutionContextManager()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def engine(
    registry: NodeRegistry,
    manager: ExecutionContextManager,
    store: InMemoryStore,
    monotonic: FakeMonotonic,
) -> WorkflowEngine:
    return WorkflowEngine(registry, manager, store, monotonic=monotonic)
