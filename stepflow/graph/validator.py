"""Structural validation for workflow graphs.

A fixed, ordered pipeline of independent rules runs against a GraphSpec and
stops at the first failure, so the editor gets one actionable message. The
same rules guard single edits: a proposed edge is checked against the
hypothetical edge set before it is committed.

Rule ids ("ruleSingleInputNode", ...) and detail keys ("orphans",
"inCycle") are part of the wire format consumed by the editor.
"""

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stepflow.errors import StructuralError
from stepflow.graph.edge import EdgeSpec, GraphSpec
from stepflow.graph.node import MAX_INBOUND, NodeKind

logger = logging.getLogger(__name__)


@dataclass
class RuleResult:
    """Result of a single structural rule."""

    valid: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Result of the validation pipeline (or of an on-connect check)."""

    valid: bool
    message: str = ""
    failed_rule: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid}
        if not self.valid:
            data.update(
                {"message": self.message, "failedRule": self.failed_rule, "details": self.details}
            )
        return data

    def raise_for_error(self) -> None:
        """Raise StructuralError if this result is invalid."""
        if not self.valid:
            raise StructuralError(self.failed_rule or "invalid", self.message, self.details)


@dataclass
class GraphIndex:
    """Adjacency facts shared by every rule, computed once per validation."""

    graph: GraphSpec
    node_ids: list[str]
    input_ids: list[str]
    incoming: dict[str, list[str]]
    outgoing: dict[str, list[str]]
    edges: list[EdgeSpec]


def build_index(graph: GraphSpec, edges: list[EdgeSpec] | None = None) -> GraphIndex:
    """Index graph for the rules; edges with unknown endpoints are skipped."""
    edge_list = list(graph.edges if edges is None else edges)
    node_ids = [n.id for n in graph.nodes]
    incoming: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    outgoing: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for edge in edge_list:
        if edge.source in outgoing and edge.target in incoming:
            outgoing[edge.source].append(edge.target)
            incoming[edge.target].append(edge.source)
    return GraphIndex(
        graph=graph,
        node_ids=node_ids,
        input_ids=[n.id for n in graph.nodes if n.kind == NodeKind.INPUT],
        incoming=incoming,
        outgoing=outgoing,
        edges=edge_list,
    )


# === RULES ===


def rule_single_input_node(index: GraphIndex) -> RuleResult:
    """Exactly one Input node must exist."""
    count = len(index.input_ids)
    if count == 0:
        return RuleResult(False, "No input node found. Add a single Input node.")
    if count > 1:
        return RuleResult(
            False,
            f"Multiple input nodes found ({count}). Only one Input node is supported.",
            {"inputNodes": list(index.input_ids)},
        )
    return RuleResult(True)


def rule_input_no_inbound(index: GraphIndex) -> RuleResult:
    """The Input node must have in-degree 0."""
    input_id = index.input_ids[0]
    if index.incoming.get(input_id):
        return RuleResult(
            False,
            f"Input node ({input_id}) must not have incoming connections.",
            {"nodeId": input_id, "sources": list(index.incoming[input_id])},
        )
    return RuleResult(True)


def rule_non_input_have_inbound(index: GraphIndex) -> RuleResult:
    """Every other node needs at least one inbound edge."""
    for node in index.graph.nodes:
        if node.kind == NodeKind.INPUT:
            continue
        if not index.incoming.get(node.id):
            return RuleResult(
                False,
                f"Node '{node.label or node.id}' ({node.kind}) has no incoming edge.",
                {"nodeId": node.id},
            )
    return RuleResult(True)


def rule_no_orphans(index: GraphIndex) -> RuleResult:
    """Every node must be reachable from the Input node over outgoing edges."""
    visited: set[str] = set()
    stack = [index.input_ids[0]]
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        for target in index.outgoing.get(node_id, []):
            if target not in visited:
                stack.append(target)

    orphans = [node_id for node_id in index.node_ids if node_id not in visited]
    if orphans:
        return RuleResult(
            False,
            f"Orphan/unreachable nodes detected: {', '.join(orphans)}",
            {"orphans": orphans},
        )
    return RuleResult(True)


def rule_no_cycles(index: GraphIndex) -> RuleResult:
    """
    Kahn's algorithm: peel in-degree-0 nodes until none remain.

    Whatever cannot be peeled sits on (or behind) a cycle and is reported in
    node order.
    """
    indegree = {node_id: len(index.incoming[node_id]) for node_id in index.node_ids}
    queue = deque(node_id for node_id in index.node_ids if indegree[node_id] == 0)
    peeled: set[str] = set()
    while queue:
        node_id = queue.popleft()
        peeled.add(node_id)
        for target in index.outgoing[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    if len(peeled) != len(index.node_ids):
        in_cycle = [node_id for node_id in index.node_ids if node_id not in peeled]
        return RuleResult(
            False,
            f"Cycle detected. Nodes in cycle: {', '.join(in_cycle)}",
            {"inCycle": in_cycle},
        )
    return RuleResult(True)


def rule_allowed_connections(index: GraphIndex) -> RuleResult:
    """No edges into the Input node, no self-loops, no dangling endpoints."""
    graph = index.graph
    for edge in index.edges:
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None or target is None:
            missing = edge.source if source is None else edge.target
            return RuleResult(
                False,
                f"Edge {edge.id} references unknown node {missing}.",
                {"edgeId": edge.id, "nodeId": missing},
            )
        if target.kind == NodeKind.INPUT:
            return RuleResult(
                False,
                f"Input node ({target.id}) cannot be a target of connections.",
                {"edgeId": edge.id, "nodeId": target.id},
            )
        if edge.source == edge.target:
            return RuleResult(
                False,
                f"Self-loop detected on node {edge.target}.",
                {"edgeId": edge.id, "nodeId": edge.target},
            )
    return RuleResult(True)


Rule = Callable[[GraphIndex], RuleResult]

RULES: tuple[tuple[str, Rule], ...] = (
    ("ruleSingleInputNode", rule_single_input_node),
    ("ruleInputNoInbound", rule_input_no_inbound),
    ("ruleNonInputHaveInbound", rule_non_input_have_inbound),
    ("ruleNoOrphans", rule_no_orphans),
    ("ruleNoCycles", rule_no_cycles),
    ("ruleAllowedConnections", rule_allowed_connections),
)

# Rules that still make sense on a graph that is being edited
CONNECTION_RULES: tuple[tuple[str, Rule], ...] = (
    ("ruleAllowedConnections", rule_allowed_connections),
    ("ruleNoCycles", rule_no_cycles),
)


def _run_rules(index: GraphIndex, rules: tuple[tuple[str, Rule], ...]) -> ValidationResult:
    for name, rule in rules:
        result = rule(index)
        if not result.valid:
            logger.debug(f"Rule {name} failed: {result.message}")
            return ValidationResult(
                valid=False,
                message=result.message,
                failed_rule=name,
                details=result.details,
            )
    return ValidationResult(valid=True)


def validate_graph(graph: GraphSpec) -> ValidationResult:
    """Run the full pipeline; stops at the first failing rule."""
    return _run_rules(build_index(graph), RULES)


def ensure_valid(graph: GraphSpec) -> None:
    """
    Validate graph and raise on the first failing rule.

    Raises:
        StructuralError: carrying the rule id, message and details
    """
    validate_graph(graph).raise_for_error()


# === ON-CONNECT GUARD ===


def validate_connection(graph: GraphSpec, edge: EdgeSpec) -> ValidationResult:
    """
    Check a proposed edge before it is committed to an editing graph.

    Completeness rules (single input, inbound for every node, no orphans)
    are not applied here; a graph under construction is allowed to be
    partial. Everything that a single edge can break is checked against the
    hypothetical edge set.
    """
    source = graph.get_node(edge.source)
    target = graph.get_node(edge.target)

    if source is None or target is None:
        return ValidationResult(
            valid=False,
            message="Invalid nodes.",
            failed_rule="ruleAllowedConnections",
            details={"source": edge.source, "target": edge.target},
        )
    if target.kind == NodeKind.INPUT:
        return ValidationResult(
            valid=False,
            message="Cannot connect INTO an Input node.",
            failed_rule="ruleAllowedConnections",
            details={"nodeId": target.id},
        )
    if source.id == target.id:
        return ValidationResult(
            valid=False,
            message="Node cannot connect to itself.",
            failed_rule="ruleAllowedConnections",
            details={"nodeId": target.id},
        )
    if any(e.source == edge.source and e.target == edge.target for e in graph.edges):
        return ValidationResult(
            valid=False,
            message=f"Connection {edge.source} -> {edge.target} already exists.",
            failed_rule="ruleDuplicateEdge",
            details={"source": edge.source, "target": edge.target},
        )

    hypothetical = [*graph.edges, edge]
    result = _run_rules(build_index(graph, hypothetical), CONNECTION_RULES)
    if not result.valid:
        if result.failed_rule == "ruleNoCycles":
            result.message = "Connection creates a cycle."
        return result

    limit = MAX_INBOUND.get(target.kind)
    if limit is not None and len(graph.get_incoming_edges(target.id)) >= limit:
        noun = "input" if limit == 1 else "inputs"
        return ValidationResult(
            valid=False,
            message=f"{target.kind.value[:1].upper()}{target.kind.value[1:]} node accepts only "
            f"{limit} {noun}.",
            failed_rule="ruleMaxInbound",
            details={"nodeId": target.id, "limit": limit},
        )

    return ValidationResult(valid=True)


def connect(graph: GraphSpec, edge: EdgeSpec) -> GraphSpec:
    """
    Return a new graph with edge appended; graph itself is never modified.

    Raises:
        StructuralError: if validate_connection rejects the edge
    """
    validate_connection(graph, edge).raise_for_error()
    return graph.with_edge(edge)
