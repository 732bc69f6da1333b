"""
Step handler protocol and registry.

A handler performs one kind's side effect. The contract is uniform:

    async execute(fields, scope) -> StepOutcome

``fields`` are the step's resolved field values (templates already looked up
in the live scope); ``scope`` is a read-only ScopeView. Handlers never write
to the scope: the engine binds ``outcome.value`` only when ``outcome.ok``.
"""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from stepflow.errors import StepExecutionError
from stepflow.graph.node import NodeKind
from stepflow.runtime.scope import ScopeView

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of running one step handler."""

    ok: bool
    value: Any = None
    reason: str = ""
    details: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "StepOutcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str, details: Any = None) -> "StepOutcome":
        return cls(ok=False, reason=reason, details=details)


@runtime_checkable
class StepHandler(Protocol):
    """Executes the side effect of one node kind."""

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome: ...


class FunctionHandler:
    """
    Adapts a plain function into a StepHandler.

    The function receives (fields, scope) and may be sync or async. A
    returned StepOutcome is passed through, any other return value is a
    success, and StepExecutionError becomes a failure.
    """

    def __init__(self, func: Callable[..., Any], name: str | None = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "handler")

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        try:
            result = self.func(fields, scope)
            if inspect.isawaitable(result):
                result = await result
        except StepExecutionError as e:
            return StepOutcome.failure(e.reason, e.details)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome.success(result)

    def __repr__(self) -> str:
        return f"FunctionHandler({self.name})"


class HandlerRegistry:
    """
    Maps each NodeKind to its StepHandler.

    Example:
        registry = HandlerRegistry()

        @registry.handler(NodeKind.EMAIL_SEND)
        async def send_email(fields, scope):
            await mailer.send(fields["to"], fields["subject"], fields["body"])
            return {"sent": True}
    """

    def __init__(self, handlers: dict[NodeKind, StepHandler] | None = None):
        self._handlers: dict[NodeKind, StepHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind: NodeKind | str, handler: StepHandler | Callable[..., Any]) -> None:
        """Register handler for kind, replacing any previous one."""
        kind = NodeKind(kind)
        if not isinstance(handler, StepHandler):
            if not callable(handler):
                raise TypeError(f"Handler for '{kind}' must be a StepHandler or a callable")
            handler = FunctionHandler(handler)
        if kind in self._handlers:
            logger.debug(f"Replacing handler for {kind}")
        self._handlers[kind] = handler

    def handler(self, kind: NodeKind | str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(kind, func)
            return func

        return decorator

    def unregister(self, kind: NodeKind | str) -> bool:
        return self._handlers.pop(NodeKind(kind), None) is not None

    def get(self, kind: NodeKind | str) -> StepHandler | None:
        return self._handlers.get(NodeKind(kind))

    def kinds(self) -> list[NodeKind]:
        return list(self._handlers)

    def __contains__(self, kind: object) -> bool:
        try:
            return NodeKind(kind) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False
