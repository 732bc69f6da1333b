"""
stepflow - compile workflow graphs into ordered plans and run them.

    graph = parse_graph(json.loads(raw))
    plan = compile_graph(graph, schema_lookup=DictSchemaLookup(schemas))
    result = await ExecutionEngine(default_registry()).execute(plan, input_data)
"""

from stepflow.config import EngineConfig
from stepflow.errors import (
    GraphFormatError,
    StepExecutionError,
    StepflowError,
    StructuralError,
    UnresolvedReferenceError,
)
from stepflow.graph import (
    CompiledStep,
    DictSchemaLookup,
    EdgeSpec,
    ExecutionEngine,
    ExecutionResult,
    ExecutionStatus,
    GraphSpec,
    NodeKind,
    NodeSpec,
    Plan,
    StepCompiler,
    VariableBinding,
    VariableVisibilityResolver,
    compile_graph,
    connect,
    parse_graph,
    validate_connection,
    validate_graph,
)
from stepflow.handlers import HandlerRegistry, StepOutcome, default_registry
from stepflow.runtime import EventBus, EventType, WorkflowEvent

__version__ = "0.1.0"

__all__ = [
    "CompiledStep",
    "DictSchemaLookup",
    "EdgeSpec",
    "EngineConfig",
    "EventBus",
    "EventType",
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionStatus",
    "GraphFormatError",
    "GraphSpec",
    "HandlerRegistry",
    "NodeKind",
    "NodeSpec",
    "Plan",
    "StepCompiler",
    "StepExecutionError",
    "StepOutcome",
    "StepflowError",
    "StructuralError",
    "UnresolvedReferenceError",
    "VariableBinding",
    "VariableVisibilityResolver",
    "WorkflowEvent",
    "compile_graph",
    "connect",
    "default_registry",
    "parse_graph",
    "validate_connection",
    "validate_graph",
]
