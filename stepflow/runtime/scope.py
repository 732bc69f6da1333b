"""
Runtime scope - the variable store of one in-flight execution.

RuntimeScope is owned by exactly one execution and only written by the
engine (bind on step success). Handlers receive a ScopeView, a read-only
window on the same data, so a failing handler cannot leave partial writes.
"""

import copy
from collections.abc import Mapping
from typing import Any

from stepflow.graph.templates import MISSING, lookup_path, render


class RuntimeScope:
    """
    Mutable mapping of variable name to last-bound value.

    Always contains an ``input`` sub-object; every successful step adds one
    top-level key named after its output variable.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))
        self._data.setdefault("input", {})

    @classmethod
    def from_plan_scope(
        cls, initial_scope: Mapping[str, Any], input_data: Mapping[str, Any] | None = None
    ) -> "RuntimeScope":
        """Copy a plan's initial scope and overlay caller-supplied input values."""
        scope = cls(initial_scope)
        if input_data:
            scope._data["input"].update(copy.deepcopy(dict(input_data)))
        return scope

    @property
    def input(self) -> dict[str, Any]:
        return self._data["input"]

    def get(self, path: str, default: Any = None) -> Any:
        value = lookup_path(self._data, path)
        return default if value is MISSING else value

    def has(self, path: str) -> bool:
        return lookup_path(self._data, path) is not MISSING

    def bind(self, name: str, value: Any) -> None:
        """Bind a step result at top level."""
        if name == "input":
            raise ValueError("'input' is reserved for workflow input variables")
        self._data[name] = value

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the current bindings."""
        return copy.deepcopy(self._data)

    def view(self, **context: Any) -> "ScopeView":
        return ScopeView(self, **context)

    def __contains__(self, name: object) -> bool:
        return name in self._data

    def __repr__(self) -> str:
        return f"RuntimeScope(keys={self.keys()})"


class ScopeView:
    """
    Read-only access to a RuntimeScope for step handlers.

    Besides lookups it carries per-execution context: the transport request
    (headers etc.), the execution id and the step being run.
    """

    def __init__(
        self,
        scope: RuntimeScope,
        request: Mapping[str, Any] | None = None,
        execution_id: str = "",
        step_id: str = "",
    ):
        self._scope = scope
        self.request: dict[str, Any] = dict(request or {})
        self.execution_id = execution_id
        self.step_id = step_id

    @property
    def input(self) -> dict[str, Any]:
        return copy.deepcopy(self._scope.input)

    def get(self, path: str, default: Any = None) -> Any:
        return copy.deepcopy(self._scope.get(path, default))

    def has(self, path: str) -> bool:
        return self._scope.has(path)

    def render(self, value: Any) -> Any:
        """Resolve leftover placeholders in value against the live scope."""
        return render(value, self._scope.snapshot())

    def snapshot(self) -> dict[str, Any]:
        return self._scope.snapshot()
