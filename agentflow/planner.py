from __future__ import annotations

from collections import defaultdict, deque

from .errors import PlanningError
from .models import WorkflowDefinition

DEPTH_FIRST = "depth_first"
TOPOLOGICAL = "topological"
PLAN_STRATEGIES = (DEPTH_FIRST, TOPOLOGICAL)


def _ordered_targets(definition: WorkflowDefinition, node_id: str) -> list[str]:
    # sorted() is stable, so equal priorities keep declaration order.
    targets = [
        conn.target_node_id
        for conn in definition.outgoing(node_id)
        if definition.get_node(conn.target_node_id) is not None
    ]
    return sorted(targets, key=lambda target: definition.get_node(target).metadata.priority)


def build_execution_plan(definition: WorkflowDefinition, start_node_id: str) -> list[str]:
    """Depth-first reachability order from ``start_node_id``.

    Each node is emitted on first visit only. Outgoing connections are
    followed in ascending order of the target's ``metadata.priority``. A
    node with several predecessors is scheduled after the first one that
    reaches it, not after all of them.
    """
    if definition.get_node(start_node_id) is None:
        raise PlanningError(f"Start node '{start_node_id}' not found in workflow")

    visited: set[str] = set()
    plan: list[str] = []
    stack = [start_node_id]
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        plan.append(node_id)
        stack.extend(reversed(_ordered_targets(definition, node_id)))
    return plan


def topological_plan(definition: WorkflowDefinition, start_node_id: str) -> list[str]:
    """Kahn order over the subgraph reachable from ``start_node_id``.

    Joins are scheduled only after every reachable predecessor.
    """
    reachable = build_execution_plan(definition, start_node_id)
    members = set(reachable)
    position = {node_id: idx for idx, node_id in enumerate(reachable)}

    indegree: dict[str, int] = defaultdict(int)
    edges: dict[str, list[str]] = defaultdict(list)
    for node_id in reachable:
        indegree[node_id] += 0
    for conn in definition.connections:
        if conn.source_node_id in members and conn.target_node_id in members:
            edges[conn.source_node_id].append(conn.target_node_id)
            indegree[conn.target_node_id] += 1

    def sort_key(node_id: str) -> tuple[int, int]:
        return definition.get_node(node_id).metadata.priority, position[node_id]

    ready = deque(sorted((nid for nid in reachable if indegree[nid] == 0), key=sort_key))
    order: list[str] = []
    while ready:
        node_id = ready.popleft()
        order.append(node_id)
        released = []
        for target in edges.get(node_id, []):
            indegree[target] -= 1
            if indegree[target] == 0:
                released.append(target)
        ready.extend(sorted(released, key=sort_key))

    if len(order) != len(reachable):
        raise PlanningError("Workflow graph has a cycle")
    return order


def plan_for_strategy(definition: WorkflowDefinition, start_node_id: str, strategy: str) -> list[str]:
    if strategy == DEPTH_FIRST:
        return build_execution_plan(definition, start_node_id)
    if strategy == TOPOLOGICAL:
        return topological_plan(definition, start_node_id)
    raise PlanningError(f"Unknown plan strategy: {strategy}")
