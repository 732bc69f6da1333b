"""
Plan Data Structures - what the compiler hands to the execution engine.

A Plan is an ordered list of CompiledSteps plus the initial variable scope.
Plans are frozen once produced and may be shared by any number of concurrent
executions; every execution copies initial_scope into its own RuntimeScope.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stepflow.graph.node import NodeKind


class WarningCode(StrEnum):
    """Non-fatal findings recorded while compiling."""

    UNRESOLVED_REFERENCE = "unresolved_reference"
    REFERENCE_NOT_UPSTREAM = "reference_not_upstream"
    MISSING_FIELDS = "missing_fields"
    UNKNOWN_FIELD = "unknown_field"


class CompileWarning(BaseModel):
    """A non-fatal problem found in one node's fields."""

    code: WarningCode
    node_id: str
    step_id: str | None = None
    message: str
    expression: str | None = None

    model_config = {"frozen": True}


class CompiledStep(BaseModel):
    """
    One executable step.

    resolved_fields holds the kind payload with templates rewritten to
    runtime paths. references lists the locations (key/index paths into
    resolved_fields) whose string value is a bare runtime path to be
    replaced by the scope value at execution time.
    """

    id: str = Field(description="Step id: step1..stepN in plan order")
    node_id: str
    kind: NodeKind
    label: str = ""
    resolved_fields: dict[str, Any] = Field(default_factory=dict)
    output_var: str | None = None
    pass_mode: str = "full"
    references: list[list[str | int]] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def reference_locations(self) -> set[tuple[str | int, ...]]:
        return {tuple(location) for location in self.references}


class Plan(BaseModel):
    """An ordered, template-resolved list of steps plus the initial scope."""

    workflow_id: str = ""
    steps: list[CompiledStep] = Field(default_factory=list)
    initial_scope: dict[str, Any] = Field(default_factory=lambda: {"input": {}})
    warnings: list[CompileWarning] = Field(default_factory=list)

    model_config = {"frozen": True}

    def get_step(self, step_id: str) -> CompiledStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def input_defaults(self) -> dict[str, Any]:
        return dict(self.initial_scope.get("input", {}))

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_json(cls, data: str | bytes) -> "Plan":
        return cls.model_validate_json(data)
