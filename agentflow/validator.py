from __future__ import annotations

from collections import defaultdict

from .models import NodeCategory, ValidationIssue, ValidationResult, WorkflowDefinition

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


def validate_workflow(definition: WorkflowDefinition) -> ValidationResult:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    node_ids: set[str] = set()
    for node in definition.nodes:
        if node.id in node_ids:
            errors.append(
                ValidationIssue(
                    type="duplicate_node",
                    message=f"Node id '{node.id}' is used more than once",
                    node_id=node.id,
                )
            )
        node_ids.add(node.id)

    if not definition.trigger_nodes():
        errors.append(
            ValidationIssue(
                type="missing_trigger",
                message="Workflow must have at least one trigger node",
            )
        )

    connected: set[str] = set()
    for conn in definition.connections:
        connected.add(conn.source_node_id)
        connected.add(conn.target_node_id)
        missing = [nid for nid in (conn.source_node_id, conn.target_node_id) if nid not in node_ids]
        for node_id in missing:
            errors.append(
                ValidationIssue(
                    type="invalid_connection",
                    message=f"Connection {conn.id} references unknown node '{node_id}'",
                    connection_id=conn.id,
                    node_id=node_id,
                )
            )

    for node in definition.nodes:
        if node.category != NodeCategory.TRIGGERS and node.id not in connected:
            warnings.append(
                ValidationIssue(
                    type="orphaned_node",
                    message=f"Node '{node.display_name}' is not connected to the workflow",
                    severity="warning",
                    node_id=node.id,
                )
            )

    cycle_node = find_cycle(definition)
    if cycle_node is not None:
        errors.append(
            ValidationIssue(
                type="circular_dependency",
                message=f"Workflow contains circular dependencies (cycle through '{cycle_node}')",
                node_id=cycle_node,
            )
        )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def find_cycle(definition: WorkflowDefinition) -> str | None:
    """Return the id of a node closing a cycle, or None for an acyclic graph.

    Three-colour depth-first search over the connection graph. Iterative, so
    long chains do not run into the interpreter recursion limit.
    """
    adjacency: dict[str, list[str]] = defaultdict(list)
    for conn in definition.connections:
        adjacency[conn.source_node_id].append(conn.target_node_id)

    roots = [node.id for node in definition.nodes]
    roots.extend(source for source in list(adjacency) if source not in roots)

    color: dict[str, int] = defaultdict(int)
    for root in roots:
        if color[root] != _UNVISITED:
            continue
        color[root] = _IN_PROGRESS
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node_id, index = stack[-1]
            targets = adjacency.get(node_id, [])
            if index >= len(targets):
                color[node_id] = _DONE
                stack.pop()
                continue
            stack[-1] = (node_id, index + 1)
            target = targets[index]
            state = color[target]
            if state == _IN_PROGRESS:
                return target
            if state == _UNVISITED:
                color[target] = _IN_PROGRESS
                stack.append((target, 0))
    return None
