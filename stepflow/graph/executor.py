"""
Execution Engine - runs compiled Plans.

The engine:
1. Copies the plan's initial scope into a private RuntimeScope
2. Runs each step in plan order, one at a time
3. Resolves the step's references against the live scope and dispatches to
   the registered handler for its kind
4. Binds the handler's value under the step's output variable on success
5. Stops at the first failure and returns a partial ExecutionResult

Events (step_started, step_finished, error, execution_finished,
execution_failed) go to the optional event sink. A failing sink is logged
and never interrupts execution.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from stepflow.config import EngineConfig
from stepflow.errors import StepExecutionError
from stepflow.graph.node import NodeKind
from stepflow.graph.plan import CompiledStep, Plan
from stepflow.graph.templates import resolve_fields
from stepflow.handlers.base import HandlerRegistry, StepOutcome
from stepflow.observability import (
    clear_trace_context,
    get_trace_context,
    preview_value,
    redact,
    set_trace_context,
)
from stepflow.runtime.event_bus import EventSink, EventType, WorkflowEvent
from stepflow.runtime.log_schemas import StepLog, StepStatus
from stepflow.runtime.scope import RuntimeScope, ScopeView

logger = logging.getLogger(__name__)


class ExecutionStatus(StrEnum):
    """Lifecycle of one execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExecutionResult:
    """Result of executing a plan."""

    execution_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    scope: dict[str, Any] = field(default_factory=dict)  # Final bindings
    steps: list[StepLog] = field(default_factory=list)  # One record per attempted step
    error: str | None = None
    error_details: Any = None
    failed_step_id: str | None = None
    failed_step_index: int | None = None
    duration_ms: int = 0
    response: Any = None  # Value produced by the last response step
    workflow_id: str = ""

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED

    @property
    def steps_executed(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.success,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "failedStep": self.failed_step_index,
            "failedStepId": self.failed_step_id,
            "error": self.error,
            "errorDetails": self.error_details,
            "durationMs": self.duration_ms,
            "response": self.response,
            "steps": [s.model_dump(mode="json") for s in self.steps],
        }


class ExecutionEngine:
    """
    Executes compiled plans strictly sequentially.

    Example:
        engine = ExecutionEngine(registry=default_registry(), event_sink=EventBus())

        result = await engine.execute(
            plan,
            input_data={"email": "ada@example.com", "password": "s3cret!!"},
        )
        if not result.success:
            print(result.failed_step_id, result.error, result.error_details)
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        event_sink: EventSink | None = None,
        config: EngineConfig | None = None,
    ):
        self.registry = registry
        self.event_sink = event_sink
        self.config = config or EngineConfig()
        self._active: dict[str, asyncio.Event] = {}

    @property
    def active_executions(self) -> list[str]:
        return list(self._active)

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation of a running execution.

        The current step finishes; no further step starts. Returns False if
        no execution with this id is running.
        """
        cancel_event = self._active.get(execution_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    async def execute(
        self,
        plan: Plan,
        input_data: dict[str, Any] | None = None,
        request: dict[str, Any] | None = None,
        execution_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """
        Execute plan against a fresh scope.

        Args:
            plan: Compiled plan (never modified)
            input_data: Values for the input variables (override defaults)
            request: Transport context handed to handlers (headers, ...)
            execution_id: Correlation id; generated when omitted
            cancel_event: Set it to stop before the next step

        Returns:
            ExecutionResult; step failures are reported here, not raised

        Raises:
            ValueError: if an execution with the same id is already running
        """
        execution_id = execution_id or uuid.uuid4().hex
        if execution_id in self._active:
            raise ValueError(f"Execution '{execution_id}' is already running")
        cancel_event = cancel_event or asyncio.Event()
        self._active[execution_id] = cancel_event

        scope = RuntimeScope.from_plan_scope(plan.initial_scope, input_data)
        result = ExecutionResult(execution_id=execution_id, workflow_id=plan.workflow_id)

        previous_context = get_trace_context()
        set_trace_context(workflow_id=plan.workflow_id, execution_id=execution_id)
        started = time.perf_counter()
        logger.info(
            f"🚀 Executing plan with {len(plan.steps)} steps",
            extra={"event": "execution_started"},
        )

        try:
            result.status = ExecutionStatus.RUNNING
            for index, step in enumerate(plan.steps, start=1):
                if cancel_event.is_set():
                    await self._finish_cancelled(result, scope, started, index)
                    return result

                outcome = await self._run_step(plan, step, index, scope, request, result)
                if not outcome.ok:
                    result.status = ExecutionStatus.FAILED
                    result.error = outcome.reason or "Step failed"
                    result.error_details = outcome.details
                    result.failed_step_id = step.id
                    result.failed_step_index = index
                    result.scope = scope.snapshot()
                    result.duration_ms = self._elapsed_ms(started)
                    logger.error(
                        f"✗ Execution failed at {step.id}: {result.error}",
                        extra={"event": "execution_failed", "step_id": step.id},
                    )
                    return result

            result.status = ExecutionStatus.SUCCEEDED
            result.scope = scope.snapshot()
            result.duration_ms = self._elapsed_ms(started)
            await self._emit(
                plan,
                execution_id,
                EventType.EXECUTION_FINISHED,
                data={
                    "stepsExecuted": len(result.steps),
                    "durationMs": result.duration_ms,
                    "scope": redact(result.scope, self.config.redact_keys),
                },
            )
            logger.info(
                f"✓ Execution finished: {len(result.steps)} steps in {result.duration_ms}ms",
                extra={"event": "execution_finished", "latency_ms": result.duration_ms},
            )
            return result
        finally:
            self._active.pop(execution_id, None)
            clear_trace_context()
            if previous_context:
                set_trace_context(**previous_context)

    async def _run_step(
        self,
        plan: Plan,
        step: CompiledStep,
        index: int,
        scope: RuntimeScope,
        request: dict[str, Any] | None,
        result: ExecutionResult,
    ) -> StepOutcome:
        set_trace_context(step_id=step.id, kind=step.kind.value)
        await self._emit(
            plan,
            result.execution_id,
            EventType.STEP_STARTED,
            step=step,
            index=index,
            data={"nodeId": step.node_id, "label": step.label},
        )
        logger.info(
            f"▶ Step {index}/{len(plan.steps)}: {step.label or step.id} ({step.kind})",
            extra={"event": "step_started", "step_id": step.id, "step_index": index},
        )

        started_at = datetime.now(UTC).isoformat()
        step_start = time.perf_counter()
        fields = resolve_fields(step.resolved_fields, step.reference_locations, scope.snapshot())
        view = scope.view(request=request, execution_id=result.execution_id, step_id=step.id)
        outcome = await self._dispatch(step, fields, view)
        if outcome.ok and step.output_var:
            try:
                scope.bind(step.output_var, outcome.value)
            except ValueError as e:
                outcome = StepOutcome.failure(str(e), {"outputVar": step.output_var})
        duration_ms = self._elapsed_ms(step_start)

        log = StepLog(
            step_index=index,
            step_id=step.id,
            node_id=step.node_id,
            kind=step.kind.value,
            label=step.label,
            status=StepStatus.SUCCESS if outcome.ok else StepStatus.FAILED,
            input=redact(fields, self.config.redact_keys),
            output_var=step.output_var,
            duration_ms=duration_ms,
            started_at=started_at,
            execution_id=result.execution_id,
        )

        if outcome.ok:
            if step.kind == NodeKind.RESPONSE:
                result.response = outcome.value
            log.output = redact(outcome.value, self.config.redact_keys)
            result.steps.append(log)
            await self._emit(
                plan,
                result.execution_id,
                EventType.STEP_FINISHED,
                step=step,
                index=index,
                data={
                    "nodeId": step.node_id,
                    "durationMs": duration_ms,
                    "outputVar": step.output_var,
                    "preview": preview_value(
                        outcome.value, self.config.preview_max_chars, self.config.redact_keys
                    ),
                },
            )
            logger.info(
                f"  ✓ {step.id} succeeded in {duration_ms}ms",
                extra={"event": "step_finished", "step_id": step.id, "latency_ms": duration_ms},
            )
        else:
            log.error = outcome.reason or "Step failed"
            log.error_details = redact(outcome.details, self.config.redact_keys)
            result.steps.append(log)
            await self._emit(
                plan,
                result.execution_id,
                EventType.ERROR,
                step=step,
                index=index,
                data={
                    "nodeId": step.node_id,
                    "reason": log.error,
                    "details": log.error_details,
                    "durationMs": duration_ms,
                },
            )
            logger.error(
                f"  ✗ {step.id} failed: {log.error}",
                extra={"event": "step_failed", "step_id": step.id, "latency_ms": duration_ms},
            )
        return outcome

    async def _dispatch(
        self, step: CompiledStep, fields: dict[str, Any], view: ScopeView
    ) -> StepOutcome:
        handler = self.registry.get(step.kind)
        if handler is None:
            return StepOutcome.failure(f"No handler registered for step kind '{step.kind}'")
        try:
            outcome = await handler.execute(fields, view)
        except StepExecutionError as e:
            return StepOutcome.failure(e.reason, e.details)
        except Exception as e:
            logger.error(f"Handler for {step.kind} raised: {e}", exc_info=True)
            return StepOutcome.failure(
                str(e) or type(e).__name__, {"exception": type(e).__name__}
            )
        if not isinstance(outcome, StepOutcome):
            return StepOutcome.success(outcome)
        return outcome

    async def _finish_cancelled(
        self, result: ExecutionResult, scope: RuntimeScope, started: float, index: int
    ) -> None:
        result.status = ExecutionStatus.CANCELLED
        result.error = "cancelled"
        result.scope = scope.snapshot()
        result.duration_ms = self._elapsed_ms(started)
        await self._emit_raw(
            WorkflowEvent(
                type=EventType.EXECUTION_FAILED,
                execution_id=result.execution_id,
                workflow_id=result.workflow_id,
                data={"reason": "cancelled", "stepsExecuted": index - 1},
            )
        )
        logger.warning(
            f"Execution cancelled before step {index}", extra={"event": "execution_cancelled"}
        )

    async def _emit(
        self,
        plan: Plan,
        execution_id: str,
        event_type: EventType,
        step: CompiledStep | None = None,
        index: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._emit_raw(
            WorkflowEvent(
                type=event_type,
                execution_id=execution_id,
                workflow_id=plan.workflow_id,
                step_index=index,
                step_id=step.id if step else None,
                kind=step.kind.value if step else None,
                data=data or {},
            )
        )

    async def _emit_raw(self, event: WorkflowEvent) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink.publish(event)
        except Exception as e:
            logger.warning(f"Event sink failed to publish {event.type}: {e}")

    @staticmethod
    def _elapsed_ms(since: float) -> int:
        return int((time.perf_counter() - since) * 1000)
