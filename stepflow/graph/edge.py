"""
Edge Protocol - how steps connect in a workflow graph.

An edge is a plain directed dependency ``source → target``: the target runs
after the source and may read the variables the source exposes. Edges carry
no conditions; the structural rules (single entry, acyclic, reachable) are
enforced by the validator, not by these models.
"""

import heapq
import logging
from typing import Any

import jsonschema
from pydantic import BaseModel, Field, ValidationError, model_validator

from stepflow.errors import GraphFormatError
from stepflow.graph.node import NodeKind, NodeSpec

logger = logging.getLogger(__name__)

# Raw JSON shape accepted from the editor or a generation service
WORKFLOW_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["nodes", "edges"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id"],
                "anyOf": [{"required": ["type"]}, {"required": ["kind"]}],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string"},
                    "kind": {"type": "string"},
                    "data": {
                        "type": "object",
                        "properties": {
                            "label": {"type": "string"},
                            "fields": {"type": "object"},
                            "sampleValue": {},
                        },
                    },
                    "fields": {"type": "object"},
                },
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source", "target"],
                "properties": {
                    "id": {"type": "string"},
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                },
            },
        },
    },
}


class EdgeSpec(BaseModel):
    """
    A directed dependency between two nodes.

    Example:
        EdgeSpec(id="input-to-validate", source="input_main", target="validate")
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")

    model_config = {"extra": "allow"}

    @model_validator(mode="after")
    def _default_id(self) -> "EdgeSpec":
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self


class GraphSpec(BaseModel):
    """
    A workflow graph: nodes plus the edges between them.

    Model invariants (checked here): node ids are unique and every kind is
    known. Structural invariants (one input, acyclic, no orphans) are the
    validator's job; callers must run it before trusting them.
    """

    id: str = ""
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    edges: list[EdgeSpec] = Field(default_factory=list, description="All edge specifications")

    model_config = {"extra": "allow"}

    @model_validator(mode="after")
    def _unique_node_ids(self) -> "GraphSpec":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: '{node.id}'")
            seen.add(node.id)
        return self

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def nodes_by_kind(self, kind: NodeKind | str) -> list[NodeSpec]:
        """All nodes of one kind, in insertion order."""
        return [n for n in self.nodes if n.kind == kind]

    @property
    def input_node(self) -> NodeSpec | None:
        """The Input node, or None when there is not exactly one."""
        inputs = self.nodes_by_kind(NodeKind.INPUT)
        return inputs[0] if len(inputs) == 1 else None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    # Short aliases used throughout the validator and resolver
    outgoing_edges = get_outgoing_edges
    incoming_edges = get_incoming_edges

    def predecessors(self, node_id: str) -> list[NodeSpec]:
        """Distinct known sources of edges into node_id, in edge order."""
        result: list[NodeSpec] = []
        seen: set[str] = set()
        for edge in self.get_incoming_edges(node_id):
            source = self.get_node(edge.source)
            if source is not None and source.id not in seen:
                seen.add(source.id)
                result.append(source)
        return result

    def successors(self, node_id: str) -> list[NodeSpec]:
        """Distinct known targets of edges out of node_id, in edge order."""
        result: list[NodeSpec] = []
        seen: set[str] = set()
        for edge in self.get_outgoing_edges(node_id):
            target = self.get_node(edge.target)
            if target is not None and target.id not in seen:
                seen.add(target.id)
                result.append(target)
        return result

    def adjacency(self, edges: list[EdgeSpec] | None = None) -> dict[str, list[str]]:
        """
        Outgoing adjacency keyed by node id, in node insertion order.

        Edges whose endpoints are not both known nodes are skipped.
        """
        adj: dict[str, list[str]] = {n.id: [] for n in self.nodes}
        for edge in self.edges if edges is None else edges:
            if edge.source in adj and edge.target in adj:
                adj[edge.source].append(edge.target)
        return adj

    def topological_order(self) -> tuple[list[NodeSpec], list[NodeSpec]]:
        """
        Kahn's algorithm with ties broken by node insertion order.

        Returns (ordered, remaining); remaining is non-empty only when the
        graph has a cycle, and lists the unpeeled nodes in insertion order.
        """
        position = {n.id: i for i, n in enumerate(self.nodes)}
        adj = self.adjacency()
        indegree = {node_id: 0 for node_id in adj}
        for targets in adj.values():
            for target in targets:
                indegree[target] += 1

        ready = [position[node_id] for node_id, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[NodeSpec] = []
        while ready:
            node = self.nodes[heapq.heappop(ready)]
            ordered.append(node)
            for target in adj[node.id]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    heapq.heappush(ready, position[target])

        peeled = {n.id for n in ordered}
        remaining = [n for n in self.nodes if n.id not in peeled]
        return ordered, remaining

    def with_edge(self, edge: EdgeSpec) -> "GraphSpec":
        """Return a copy of this graph with one more edge."""
        snapshot = self.model_copy(deep=True)
        snapshot.edges.append(edge.model_copy())
        return snapshot

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the editor JSON shape."""
        data: dict[str, Any] = {
            "nodes": [n.to_wire() for n in self.nodes],
            "edges": [{"id": e.id, "source": e.source, "target": e.target} for e in self.edges],
        }
        if self.id:
            data["id"] = self.id
        if self.name:
            data["name"] = self.name
        return data


def parse_graph(data: dict[str, Any]) -> GraphSpec:
    """
    Parse graph JSON (editor or generated) into a GraphSpec.

    The raw shape is checked against WORKFLOW_JSON_SCHEMA first so that
    malformed payloads produce path-qualified messages; model invariants are
    then enforced by pydantic.

    Raises:
        GraphFormatError: if either check fails
    """
    validator = jsonschema.Draft7Validator(WORKFLOW_JSON_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    if errors:
        raise GraphFormatError(f"Invalid workflow graph JSON: {errors[0]}", errors)

    try:
        graph = GraphSpec.model_validate(data)
    except ValidationError as e:
        messages = [
            f"{'.'.join(str(p) for p in err['loc']) or 'root'}: {err['msg']}" for err in e.errors()
        ]
        raise GraphFormatError(f"Invalid workflow graph: {messages[0]}", messages) from e

    logger.debug(f"Parsed graph with {len(graph.nodes)} nodes and {len(graph.edges)} edges")
    return graph
