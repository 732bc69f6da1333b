"""Runtime: execution scope, progress events and step logs."""

from stepflow.runtime.event_bus import EventBus, EventSink, EventType, WorkflowEvent
from stepflow.runtime.log_schemas import StepLog, StepStatus
from stepflow.runtime.scope import RuntimeScope, ScopeView

__all__ = [
    "EventBus",
    "EventSink",
    "EventType",
    "WorkflowEvent",
    "RuntimeScope",
    "ScopeView",
    "StepLog",
    "StepStatus",
]
