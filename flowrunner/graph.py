from __future__ import annotations

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass, field

from .errors import (
    BranchConflict,
    DuplicateNode,
    GraphCycle,
    GraphError,
    GraphReferenceError,
    InvalidNodeConfig,
    InvalidWorkflow,
    UnknownIntegration,
)
from .models import Edge, Node, NodeKind, Workflow
from .nodes.base import NodeRegistry


@dataclass
class ValidationReport:
    errors: list[GraphError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise InvalidWorkflow(list(self.errors))

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": list(self.warnings),
        }


def incoming_edges(edges: list[Edge]) -> dict[str, list[Edge]]:
    incoming: dict[str, list[Edge]] = defaultdict(list)
    for edge in edges:
        incoming[edge.target].append(edge)
    return incoming


def outgoing_edges(edges: list[Edge]) -> dict[str, list[Edge]]:
    outgoing: dict[str, list[Edge]] = defaultdict(list)
    for edge in edges:
        outgoing[edge.source].append(edge)
    return outgoing


def reachable_from(starts: list[str], edges: list[Edge]) -> set[str]:
    outgoing = outgoing_edges(edges)
    seen = set(starts)
    queue = deque(starts)
    while queue:
        node_id = queue.popleft()
        for edge in outgoing.get(node_id, []):
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def topological_order(nodes: list[Node], edges: list[Edge]) -> list[Node]:
    """Kahn's algorithm; ties go to the node listed first in ``nodes``."""
    position = {node.id: index for index, node in enumerate(nodes)}
    node_map = {node.id: node for node in nodes}
    indegree = {node.id: 0 for node in nodes}

    for edge in edges:
        if edge.source not in node_map:
            raise GraphReferenceError(f"Unknown source node in edge {edge.id}: {edge.source}", edge_id=edge.id)
        if edge.target not in node_map:
            raise GraphReferenceError(f"Unknown target node in edge {edge.id}: {edge.target}", edge_id=edge.id)
        indegree[edge.target] += 1

    outgoing = outgoing_edges(edges)
    ready = [position[node_id] for node_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    order: list[Node] = []

    while ready:
        node = nodes[heapq.heappop(ready)]
        order.append(node)
        for edge in outgoing.get(node.id, []):
            indegree[edge.target] -= 1
            if indegree[edge.target] == 0:
                heapq.heappush(ready, position[edge.target])

    if len(order) != len(node_map):
        sorted_ids = {node.id for node in order}
        raise GraphCycle([node.id for node in nodes if node.id not in sorted_ids])

    return order


def _config_errors(node: Node, registry: NodeRegistry) -> dict[str, str]:
    result = registry.validate_config(node.subtype, node.config)
    # Templated fields are only known at run time.
    return {
        key: message
        for key, message in result.errors.items()
        if not (isinstance(node.config.get(key), str) and "{{" in node.config[key])
    }


def validate_workflow(workflow: Workflow, registry: NodeRegistry) -> ValidationReport:
    """Check a workflow graph without running it."""
    report = ValidationReport()

    nodes: list[Node] = []
    seen_ids: set[str] = set()
    for node in workflow.nodes:
        if node.id in seen_ids:
            report.errors.append(DuplicateNode(f"Duplicate node id: {node.id}", node_id=node.id))
            continue
        seen_ids.add(node.id)
        nodes.append(node)

    edges: list[Edge] = []
    for edge in workflow.edges:
        missing = [end for end in (edge.source, edge.target) if end not in seen_ids]
        if missing:
            report.errors.append(
                GraphReferenceError(
                    f"Edge {edge.id} references unknown node(s): {', '.join(missing)}",
                    edge_id=edge.id,
                )
            )
            continue
        edges.append(edge)

    branching: set[str] = set()
    for node in nodes:
        if not registry.has(node.subtype):
            report.errors.append(UnknownIntegration(node.subtype, node_id=node.id))
            continue
        spec = registry.get(node.subtype)
        if spec.kind != node.kind:
            report.warnings.append(
                f"Node {node.id} is declared as {node.kind.value} but {node.subtype} is a {spec.kind.value} integration"
            )
        if spec.branches:
            branching.add(node.id)
        errors = _config_errors(node, registry)
        if errors:
            report.errors.append(InvalidNodeConfig(node.id, errors))

    known = {node.id for node in nodes if registry.has(node.subtype)}
    tag_counts: dict[tuple[str, str], int] = defaultdict(int)
    for edge in edges:
        if edge.branch is None:
            continue
        if edge.source in known and edge.source not in branching:
            report.errors.append(
                BranchConflict(
                    f"Edge {edge.id} has a branch tag but {edge.source} does not branch",
                    node_id=edge.source,
                    edge_id=edge.id,
                )
            )
            continue
        tag_counts[(edge.source, edge.branch)] += 1
    for (source, branch), count in tag_counts.items():
        if count > 1:
            report.errors.append(
                BranchConflict(f"Node {source} has {count} edges tagged '{branch}'", node_id=source)
            )

    try:
        topological_order(nodes, edges)
    except GraphCycle as exc:
        report.errors.append(exc)

    triggers = [node.id for node in nodes if node.kind == NodeKind.TRIGGER]
    if not triggers:
        report.warnings.append("Workflow has no trigger node")
    else:
        reachable = reachable_from(triggers, edges)
        for node in nodes:
            if node.id not in reachable:
                report.warnings.append(f"Node {node.id} is not reachable from any trigger")

    return report
