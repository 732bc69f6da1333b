"""Graph structures: nodes, edges, validation, visibility, compilation and execution."""

from stepflow.graph.compiler import StepCompiler, build_payload, compile_graph
from stepflow.graph.edge import EdgeSpec, GraphSpec, parse_graph
from stepflow.graph.executor import ExecutionEngine, ExecutionResult, ExecutionStatus
from stepflow.graph.node import InputVariable, NodeKind, NodeSpec
from stepflow.graph.plan import CompiledStep, CompileWarning, Plan, WarningCode
from stepflow.graph.schema import DictSchemaLookup, NullSchemaLookup, SchemaLookup
from stepflow.graph.validator import (
    ValidationResult,
    connect,
    ensure_valid,
    validate_connection,
    validate_graph,
)
from stepflow.graph.visibility import VariableBinding, VariableVisibilityResolver

__all__ = [
    "CompiledStep",
    "CompileWarning",
    "DictSchemaLookup",
    "EdgeSpec",
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionStatus",
    "GraphSpec",
    "InputVariable",
    "NodeKind",
    "NodeSpec",
    "NullSchemaLookup",
    "Plan",
    "SchemaLookup",
    "StepCompiler",
    "ValidationResult",
    "VariableBinding",
    "VariableVisibilityResolver",
    "WarningCode",
    "build_payload",
    "compile_graph",
    "connect",
    "ensure_valid",
    "parse_graph",
    "validate_connection",
    "validate_graph",
]
