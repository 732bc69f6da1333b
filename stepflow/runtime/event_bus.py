"""
Event Bus - typed progress events for workflow executions.

The engine publishes to any EventSink (an object with ``async publish``).
EventBus is the in-process implementation:
- Type/execution/step filtered subscriptions
- Bounded history of recent events for late subscribers and debugging
- Subscriber failures are logged, never propagated to the publisher
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events an execution emits."""

    STEP_STARTED = "step_started"
    STEP_FINISHED = "step_finished"
    ERROR = "error"
    EXECUTION_FINISHED = "execution_finished"
    EXECUTION_FAILED = "execution_failed"


@dataclass
class WorkflowEvent:
    """An event in the life of one execution."""

    type: EventType
    execution_id: str
    workflow_id: str = ""
    step_index: int | None = None  # 1-based, same numbering as step ids
    step_id: str | None = None
    kind: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "stepIndex": self.step_index,
            "stepId": self.step_id,
            "kind": self.kind,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def signature(self) -> tuple:
        """Event identity without timestamps, for comparing runs."""
        return (self.type.value, self.step_index, self.step_id, self.kind)


@runtime_checkable
class EventSink(Protocol):
    """Anything the engine can publish events to."""

    async def publish(self, event: WorkflowEvent) -> None: ...


# Type for event handlers
EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_execution: str | None = None  # Only receive events from this execution
    filter_step: str | None = None  # Only receive events from this step


class EventBus:
    """
    Pub/sub event bus for execution progress.

    Example:
        bus = EventBus()

        async def on_error(event: WorkflowEvent):
            print(f"Step {event.step_id} failed: {event.data['reason']}")

        bus.subscribe(event_types=[EventType.ERROR], handler=on_error)
        engine = ExecutionEngine(registry, event_sink=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_execution: str | None = None,
        filter_step: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_execution=filter_execution,
            filter_step=filter_step,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: WorkflowEvent) -> None:
        """Record event in history and deliver it to every matching subscriber."""
        self._event_history.append(event)

        matching_handlers = [
            s.handler for s in self._subscriptions.values() if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: WorkflowEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        if subscription.filter_step and subscription.filter_step != event.step_id:
            return False
        return True

    async def _execute_handlers(self, event: WorkflowEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Matching events, most recent first."""
        events = list(reversed(self._event_history))
        if event_type:
            events = [e for e in events if e.type == event_type]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "max_history": self._max_history,
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    def clear_history(self) -> None:
        self._event_history.clear()

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        step_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None on timeout
        """
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_execution=execution_id,
            filter_step=step_id,
        )
        try:
            if timeout is not None:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
