"""Step handlers: the pluggable side effects of each node kind."""

from stepflow.handlers.base import FunctionHandler, HandlerRegistry, StepHandler, StepOutcome
from stepflow.handlers.builtin import (
    InputHandler,
    InputValidationHandler,
    LogHandler,
    ResponseHandler,
    register_builtin_handlers,
)
from stepflow.handlers.memory import MemoryCollections, MemoryDbHandler, register_memory_handlers


def default_registry(collections: MemoryCollections | None = None) -> HandlerRegistry:
    """Registry with the built-in handlers, plus in-memory db handlers if given."""
    registry = register_builtin_handlers(HandlerRegistry())
    if collections is not None:
        register_memory_handlers(registry, collections)
    return registry


__all__ = [
    "FunctionHandler",
    "HandlerRegistry",
    "StepHandler",
    "StepOutcome",
    "InputHandler",
    "InputValidationHandler",
    "LogHandler",
    "ResponseHandler",
    "MemoryCollections",
    "MemoryDbHandler",
    "default_registry",
    "register_builtin_handlers",
    "register_memory_handlers",
]
