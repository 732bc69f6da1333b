"""
Variable visibility - which dotted paths each node may reference.

A node *holds* its own output paths plus everything its predecessors
forward to it. What it forwards downstream depends on its pass mode:

- "full": everything it holds
- a specific path S: S itself, plus every held ``S.<child>`` path when S is
  a root variable (no dot)

authMiddleware nodes gate the flow but forward nothing.

A node's available variables are the union of what its direct predecessors
forward. Bindings are always derived from the graph; nothing here is
persisted.
"""

from dataclasses import dataclass

from stepflow.graph.edge import GraphSpec
from stepflow.graph.node import (
    DB_KINDS,
    NON_EXPOSING_KINDS,
    STATIC_SUBFIELDS,
    NodeKind,
    NodeSpec,
)
from stepflow.graph.schema import SchemaLookup, safe_schema_fields
from stepflow.graph.templates import strip_braces

# Kinds whose result is bound but whose shape is opaque
OPAQUE_OUTPUT_KINDS = frozenset({NodeKind.EMAIL_SEND, NodeKind.JWT_GENERATE})


@dataclass(frozen=True)
class VariableBinding:
    """A path available to a node because an upstream node exposes it."""

    path: str
    from_node_id: str
    from_label: str

    @property
    def display(self) -> str:
        return f"{self.from_label} → {self.path}"

    def to_dict(self) -> dict[str, str]:
        return {
            "var": self.path,
            "fromNode": self.from_node_id,
            "fromLabel": self.from_label,
            "display": self.display,
        }


def _dedupe(bindings: list[VariableBinding]) -> list[VariableBinding]:
    seen: set[tuple[str, str]] = set()
    result = []
    for binding in bindings:
        key = (binding.path, binding.from_node_id)
        if key not in seen:
            seen.add(key)
            result.append(binding)
    return result


class VariableVisibilityResolver:
    """
    Computes output paths and available variables for workflow nodes.

    Example:
        resolver = VariableVisibilityResolver(DictSchemaLookup({"users": ["_id", "email"]}))
        resolver.available_vars(graph, "update_user")
        # [VariableBinding(path="foundData", ...), VariableBinding(path="foundData._id", ...)]
    """

    def __init__(self, schema_lookup: SchemaLookup | None = None):
        self.schema_lookup = schema_lookup

    def output_paths(self, node: NodeSpec) -> list[str]:
        """Every dotted path node itself produces, root variable first."""
        kind = node.kind

        if kind == NodeKind.INPUT:
            return [v.name for v in node.variables]

        out_var = node.output_var
        if out_var is None:
            return []

        if kind in DB_KINDS:
            fields = safe_schema_fields(self.schema_lookup, node.fields.get("collection"))
            return [out_var, *(f"{out_var}.{name}" for name in fields)]

        if kind == NodeKind.INPUT_VALIDATION:
            validated = []
            for rule in node.fields.get("rules") or []:
                if isinstance(rule, dict) and isinstance(rule.get("field"), str):
                    name = strip_braces(rule["field"])
                    if name:
                        validated.append(name)
            return [out_var, *validated]

        if kind in STATIC_SUBFIELDS:
            return [out_var, *(f"{out_var}.{name}" for name in STATIC_SUBFIELDS[kind])]

        if kind in OPAQUE_OUTPUT_KINDS:
            return [out_var]

        return []

    def _own_bindings(self, node: NodeSpec) -> list[VariableBinding]:
        label = node.label or node.kind.value
        return [VariableBinding(path, node.id, label) for path in self.output_paths(node)]

    def _forwarded(
        self, node: NodeSpec, available: list[VariableBinding]
    ) -> list[VariableBinding]:
        """What node passes on, given the bindings it received."""
        if node.kind in NON_EXPOSING_KINDS:
            return []
        held = _dedupe([*self._own_bindings(node), *available])
        if node.is_full_pass:
            return held

        selected = node.pass_mode.strip()
        origin = next((b for b in held if b.path == selected), None)
        if origin is None:
            origin = VariableBinding(selected, node.id, node.label or node.kind.value)
        forwarded = [origin]
        if "." not in selected:
            prefix = selected + "."
            forwarded.extend(b for b in held if b.path.startswith(prefix))
        return _dedupe(forwarded)

    def resolve(self, graph: GraphSpec) -> dict[str, list[VariableBinding]]:
        """
        Available variables for every node.

        Nodes are visited once in topological order so each one sees what
        its predecessors forward. Nodes stuck on a cycle (possible while a
        graph is still being edited) are visited last with whatever their
        already-visited predecessors provide.
        """
        ordered, remaining = graph.topological_order()
        forwarded: dict[str, list[VariableBinding]] = {}
        available: dict[str, list[VariableBinding]] = {}
        for node in [*ordered, *remaining]:
            received: list[VariableBinding] = []
            for predecessor in graph.predecessors(node.id):
                received.extend(forwarded.get(predecessor.id, []))
            available[node.id] = _dedupe(received)
            forwarded[node.id] = self._forwarded(node, available[node.id])
        return {node.id: available[node.id] for node in graph.nodes}

    def available_vars(self, graph: GraphSpec, node_id: str) -> list[VariableBinding]:
        """Bindings visible to node_id (empty for unknown ids)."""
        return self.resolve(graph).get(node_id, [])

    def available_paths(self, graph: GraphSpec, node_id: str) -> list[str]:
        return [b.path for b in self.available_vars(graph, node_id)]
