"""
Error taxonomy for graph validation, compilation and execution.

- GraphFormatError: the raw graph JSON does not have the expected shape
- StructuralError: a validator rule rejected the graph (fatal to compilation)
- UnresolvedReferenceError: a template root is unknown (only raised under the
  "error" policy, otherwise recorded as a compile warning)
- StepExecutionError: a step handler failed at run time
"""

from typing import Any


class StepflowError(Exception):
    """Base class for every error raised by stepflow."""


class GraphFormatError(StepflowError, ValueError):
    """Raised when graph JSON cannot be parsed into a GraphSpec."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class StructuralError(StepflowError):
    """
    A graph failed one of the structural validation rules.

    Carries the rule name and the offending node/edge ids so an editor can
    highlight them.
    """

    def __init__(self, rule: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.rule = rule
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": False,
            "failedRule": self.rule,
            "message": self.message,
            "details": self.details,
        }


class UnresolvedReferenceError(StepflowError):
    """A template placeholder's root is neither an input nor an output variable."""

    def __init__(self, expression: str, node_id: str, field_path: str = ""):
        location = f" (field '{field_path}')" if field_path else ""
        super().__init__(
            f"Unresolved reference '{{{{{expression}}}}}' in node '{node_id}'{location}"
        )
        self.expression = expression
        self.node_id = node_id
        self.field_path = field_path


class StepExecutionError(StepflowError):
    """Raised by step handlers to report a failure with structured details."""

    def __init__(self, reason: str, details: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details
