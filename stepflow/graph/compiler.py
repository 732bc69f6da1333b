"""
Step Compiler - turns a validated graph into an executable Plan.

The compiler:
1. Snapshots and re-validates the graph (StructuralError on failure)
2. Orders nodes topologically (ties broken by insertion order)
3. Builds the initial scope from the Input node's variables
4. Builds each node's kind payload and rewrites its templates to runtime
   paths (``{{email}}`` → ``input.email``, ``{{user.name}}`` → ``user.name``)
5. Records non-fatal findings as CompileWarnings
"""

import copy
import logging
from typing import Any, assert_never

from stepflow.config import EngineConfig
from stepflow.errors import StructuralError, UnresolvedReferenceError
from stepflow.graph.edge import GraphSpec
from stepflow.graph.node import OUTPUT_VAR_KEYS, NodeKind, NodeSpec
from stepflow.graph.plan import CompiledStep, CompileWarning, Plan, WarningCode
from stepflow.graph.schema import SchemaLookup
from stepflow.graph.templates import Location, rewrite, split_path
from stepflow.graph.validator import ensure_valid
from stepflow.graph.visibility import VariableVisibilityResolver

logger = logging.getLogger(__name__)

EMAIL_REQUIRED_FIELDS = ("to", "subject", "body")
RESERVED_OUTPUT_VARS = frozenset({"input"})


def _location_label(location: Location) -> str:
    return ".".join(str(part) for part in location)


def build_payload(node: NodeSpec) -> dict[str, Any]:
    """
    The kind-specific payload of a node, before template rewriting.

    Output-variable keys are dropped; the step carries output_var instead.
    """
    fields = {k: v for k, v in copy.deepcopy(node.fields).items() if k not in OUTPUT_VAR_KEYS}

    match node.kind:
        case NodeKind.INPUT:
            return {"variables": fields.get("variables") or []}
        case NodeKind.INPUT_VALIDATION:
            return {"rules": fields.get("rules") or [], "output": node.output_var}
        case NodeKind.DB_FIND:
            return {
                "collection": fields.get("collection"),
                "filters": fields.get("filters") or fields.get("filter") or {},
                "findType": fields.get("findType") or "findOne",
            }
        case NodeKind.DB_INSERT:
            collection = fields.pop("collection", None)
            for key in ("data", "document"):
                if isinstance(fields.get(key), dict):
                    return {"collection": collection, "data": fields[key]}
            return {"collection": collection, "data": fields}
        case NodeKind.DB_UPDATE:
            return {
                "collection": fields.get("collection"),
                "filter": fields.get("filter") or fields.get("filters") or {},
                "data": fields.get("data") or fields.get("update") or {},
            }
        case NodeKind.DB_DELETE:
            return {
                "collection": fields.get("collection"),
                "filter": fields.get("filter") or fields.get("filters") or {},
            }
        case NodeKind.USER_LOGIN:
            return {"email": fields.get("email"), "password": fields.get("password")}
        case NodeKind.AUTH_MIDDLEWARE:
            return fields
        case NodeKind.EMAIL_SEND:
            payload = {key: fields.get(key) for key in EMAIL_REQUIRED_FIELDS}
            if fields.get("from"):
                payload["from"] = fields["from"]
            return payload
        case NodeKind.JWT_GENERATE:
            return {
                "payload": fields.get("payload") or {},
                "expiresIn": fields.get("expiresIn") or "7d",
                "algorithm": fields.get("algorithm") or "HS256",
            }
        case NodeKind.LOG:
            return {"message": fields.get("message", ""), "level": fields.get("level") or "info"}
        case NodeKind.RESPONSE:
            body = fields.get("body")
            return {"status": fields.get("status") or 200, "body": {} if body is None else body}
        case _:
            assert_never(node.kind)


class StepCompiler:
    """
    Compiles workflow graphs into Plans.

    Example:
        compiler = StepCompiler(schema_lookup=DictSchemaLookup({"users": ["_id", "email"]}))
        plan = compiler.compile(graph)
        plan.steps[2].resolved_fields["data"]["email"]  # "input.email"
    """

    def __init__(
        self,
        schema_lookup: SchemaLookup | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.resolver = VariableVisibilityResolver(schema_lookup)

    @property
    def unresolved_policy(self) -> str:
        return self.config.unresolved_references

    def compile(self, graph: GraphSpec) -> Plan:
        """
        Compile graph into a Plan.

        Raises:
            StructuralError: if the graph fails validation or a node binds
                its output to a reserved name
            UnresolvedReferenceError: only under the "error" policy
        """
        snapshot = graph.model_copy(deep=True)
        ensure_valid(snapshot)
        self._check_output_vars(snapshot)

        ordered, _ = snapshot.topological_order()
        input_node = snapshot.input_node
        variables = input_node.variables if input_node is not None else []
        input_names = {v.name for v in variables}
        initial_input = {v.name: "" if v.default is None else v.default for v in variables}

        producers: dict[str, list[NodeSpec]] = {}
        for node in snapshot.nodes:
            if not node.is_input and node.output_var:
                producers.setdefault(node.output_var, []).append(node)

        ancestors = self._ancestors(snapshot, ordered)
        warnings: list[CompileWarning] = []
        steps: list[CompiledStep] = []

        for position, node in enumerate(ordered, start=1):
            step_id = f"step{position}"
            payload = build_payload(node)
            references: list[Location] = []

            if not node.is_input:

                def resolve(
                    path: str,
                    location: Location,
                    node: NodeSpec = node,
                    step_id: str = step_id,
                ) -> str | None:
                    return self._resolve_reference(
                        path,
                        location,
                        node=node,
                        step_id=step_id,
                        input_names=input_names,
                        producers=producers,
                        ancestors=ancestors[node.id],
                        warnings=warnings,
                    )

                payload, references = rewrite(payload, resolve)
                if node.kind == NodeKind.INPUT_VALIDATION:
                    # Rule fields stay paths; the handler reports errors by name
                    references = [
                        loc for loc in references if not (loc[0] == "rules" and loc[-1] == "field")
                    ]

            if node.kind == NodeKind.EMAIL_SEND:
                missing = [key for key in EMAIL_REQUIRED_FIELDS if not node.fields.get(key)]
                if missing:
                    warnings.append(
                        CompileWarning(
                            code=WarningCode.MISSING_FIELDS,
                            node_id=node.id,
                            step_id=step_id,
                            message=f"emailSend node '{node.label}' is missing: "
                            f"{', '.join(missing)}",
                        )
                    )

            steps.append(
                CompiledStep(
                    id=step_id,
                    node_id=node.id,
                    kind=node.kind,
                    label=node.label,
                    resolved_fields=payload,
                    output_var=node.output_var,
                    pass_mode=node.pass_mode,
                    references=[list(location) for location in references],
                )
            )

        plan = Plan(
            workflow_id=snapshot.id,
            steps=steps,
            initial_scope={"input": initial_input},
            warnings=warnings,
        )
        logger.info(
            f"Compiled workflow '{snapshot.id or snapshot.name or 'unnamed'}' into "
            f"{len(steps)} steps ({len(warnings)} warnings)",
            extra={"event": "compiled"},
        )
        return plan

    def _check_output_vars(self, graph: GraphSpec) -> None:
        """Reject output variables that would shadow the input sub-object."""
        for node in graph.nodes:
            if node.output_var in RESERVED_OUTPUT_VARS:
                raise StructuralError(
                    "reservedOutputVar",
                    f"Node '{node.label}' cannot bind its output to '{node.output_var}': "
                    "the name is reserved for workflow input variables.",
                    {"nodeId": node.id, "outputVar": node.output_var},
                )

    def _ancestors(self, graph: GraphSpec, ordered: list[NodeSpec]) -> dict[str, set[str]]:
        ancestors: dict[str, set[str]] = {node.id: set() for node in graph.nodes}
        for node in ordered:
            for predecessor in graph.predecessors(node.id):
                ancestors[node.id].add(predecessor.id)
                ancestors[node.id] |= ancestors[predecessor.id]
        return ancestors

    def _resolve_reference(
        self,
        path: str,
        location: Location,
        *,
        node: NodeSpec,
        step_id: str,
        input_names: set[str],
        producers: dict[str, list[NodeSpec]],
        ancestors: set[str],
        warnings: list[CompileWarning],
    ) -> str | None:
        segments = split_path(path)
        normalized = ".".join(segments)
        root = segments[0]

        if root in input_names:
            return f"input.{normalized}"
        if root == "input" and len(segments) > 1 and segments[1] in input_names:
            return normalized

        if root in producers:
            sources = producers[root]
            if not any(source.id in ancestors for source in sources):
                warnings.append(
                    CompileWarning(
                        code=WarningCode.REFERENCE_NOT_UPSTREAM,
                        node_id=node.id,
                        step_id=step_id,
                        message=f"'{normalized}' is produced by "
                        f"{', '.join(s.id for s in sources)}, which does not run before "
                        f"node '{node.id}' on any path",
                        expression=path,
                    )
                )
            elif len(segments) > 1:
                self._check_known_field(normalized, segments, sources, node, step_id, warnings)
            return normalized

        message = (
            f"Unresolved reference '{{{{{path}}}}}' in node '{node.id}' "
            f"(field '{_location_label(location)}'): '{root}' is neither an input "
            "nor an output variable"
        )
        if self.unresolved_policy == "error":
            raise UnresolvedReferenceError(path, node.id, _location_label(location))
        if self.unresolved_policy == "warn":
            logger.warning(message, extra={"event": "unresolved_reference"})
        warnings.append(
            CompileWarning(
                code=WarningCode.UNRESOLVED_REFERENCE,
                node_id=node.id,
                step_id=step_id,
                message=message,
                expression=path,
            )
        )
        return None

    def _check_known_field(
        self,
        normalized: str,
        segments: list[str],
        sources: list[NodeSpec],
        node: NodeSpec,
        step_id: str,
        warnings: list[CompileWarning],
    ) -> None:
        """Warn when a child path is not in a producer's known shape."""
        known: set[str] = set()
        for source in sources:
            known.update(self.resolver.output_paths(source))
        root = segments[0]
        children = {p for p in known if p.startswith(root + ".")}
        if children and f"{root}.{segments[1]}" not in children:
            warnings.append(
                CompileWarning(
                    code=WarningCode.UNKNOWN_FIELD,
                    node_id=node.id,
                    step_id=step_id,
                    message=f"'{normalized}' is not a known field of '{root}'",
                    expression=normalized,
                )
            )


def compile_graph(
    graph: GraphSpec,
    schema_lookup: SchemaLookup | None = None,
    config: EngineConfig | None = None,
) -> Plan:
    """Compile graph with a one-off StepCompiler."""
    return StepCompiler(schema_lookup=schema_lookup, config=config).compile(graph)
