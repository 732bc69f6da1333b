"""
Tests for ExecutionEngine: sequential runs, event streams and failure stops.
"""

import asyncio

import pytest

from conftest import RecordingSink, make_graph
from stepflow.errors import StepExecutionError
from stepflow.graph.compiler import compile_graph
from stepflow.graph.executor import ExecutionEngine, ExecutionResult, ExecutionStatus
from stepflow.graph.node import NodeKind
from stepflow.graph.plan import CompiledStep, Plan
from stepflow.handlers import HandlerRegistry, MemoryCollections, StepOutcome, default_registry
from stepflow.observability import get_trace_context
from stepflow.runtime.event_bus import EventBus, EventType

SIGNUP_INPUT = {"email": "ada@example.com", "password": "s3cret!!"}


def duplicate_user_graph():
    """input → dbFind → dbInsert → response"""
    return make_graph(
        [
            ("in", NodeKind.INPUT, {"variables": ["email"]}),
            ("find", NodeKind.DB_FIND, {"collection": "users", "filters": {"email": "{{email}}"}}),
            ("insert", NodeKind.DB_INSERT, {"collection": "users", "data": {"email": "{{email}}"}}),
            ("respond", NodeKind.RESPONSE, {"body": {"id": "{{createdRecord._id}}"}}),
        ],
        [("in", "find"), ("find", "insert"), ("insert", "respond")],
    )


class CountingHandler:
    def __init__(self, value=None):
        self.calls = 0
        self.value = value

    async def execute(self, fields, scope):
        self.calls += 1
        return StepOutcome.success(self.value)


class FailingSink:
    async def publish(self, event):
        raise ConnectionError("sink is down")


# === HAPPY PATH ===


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_signup_runs_end_to_end(self, signup_graph, sink):
        collections = MemoryCollections()
        engine = ExecutionEngine(default_registry(collections), event_sink=sink)

        result = await engine.execute(compile_graph(signup_graph), input_data=SIGNUP_INPUT)

        assert result.success
        assert result.status == ExecutionStatus.SUCCEEDED
        assert result.steps_executed == 4
        stored = collections.records("users")
        assert len(stored) == 1
        assert result.scope["validated"] is True
        assert result.scope["user"]["_id"] == stored[0]["_id"]
        assert result.response == {
            "status": 201,
            "body": {"id": stored[0]["_id"], "email": "ada@example.com"},
        }
        assert result.scope["_response"] == result.response

    @pytest.mark.asyncio
    async def test_event_stream_for_success(self, signup_graph, sink):
        engine = ExecutionEngine(default_registry(MemoryCollections()), event_sink=sink)

        result = await engine.execute(compile_graph(signup_graph), input_data=SIGNUP_INPUT)

        assert sink.signatures() == [
            ("step_started", 1),
            ("step_finished", 1),
            ("step_started", 2),
            ("step_finished", 2),
            ("step_started", 3),
            ("step_finished", 3),
            ("step_started", 4),
            ("step_finished", 4),
            ("execution_finished", None),
        ]
        assert all(e.execution_id == result.execution_id for e in sink.events)
        finished = sink.events[-1]
        assert finished.data["stepsExecuted"] == 4

    @pytest.mark.asyncio
    async def test_sensitive_values_are_redacted_in_events(self, signup_graph, sink):
        engine = ExecutionEngine(default_registry(MemoryCollections()), event_sink=sink)

        result = await engine.execute(compile_graph(signup_graph), input_data=SIGNUP_INPUT)

        first_finished = sink.events[1]
        assert '"password": "***"' in first_finished.data["preview"]
        assert "s3cret" not in first_finished.data["preview"]
        assert sink.events[-1].data["scope"]["user"]["password"] == "***"
        assert result.steps[2].input["data"]["password"] == "***"

    @pytest.mark.asyncio
    async def test_defaults_and_overrides(self):
        graph = make_graph(
            [
                ("in", NodeKind.INPUT, {"variables": [{"name": "greeting", "default": "Hi"}]}),
                ("respond", NodeKind.RESPONSE, {"body": {"text": "{{greeting}} there"}}),
            ],
            [("in", "respond")],
        )
        plan = compile_graph(graph)
        engine = ExecutionEngine(default_registry())

        default_run = await engine.execute(plan)
        override_run = await engine.execute(plan, input_data={"greeting": "Hello"})

        assert default_run.response["body"] == {"text": "Hi there"}
        assert override_run.response["body"] == {"text": "Hello there"}

    @pytest.mark.asyncio
    async def test_plan_is_not_mutated(self, signup_graph):
        plan = compile_graph(signup_graph)
        before = plan.model_dump()

        await ExecutionEngine(default_registry(MemoryCollections())).execute(
            plan, input_data=SIGNUP_INPUT
        )

        assert plan.model_dump() == before

    @pytest.mark.asyncio
    async def test_concurrent_executions_are_isolated(self, signup_graph):
        plan = compile_graph(signup_graph)
        collections = MemoryCollections()
        engine = ExecutionEngine(default_registry(collections))

        first, second = await asyncio.gather(
            engine.execute(plan, input_data={"email": "a@example.com", "password": "p1"}),
            engine.execute(plan, input_data={"email": "b@example.com", "password": "p2"}),
        )

        assert first.scope["input"]["email"] == "a@example.com"
        assert second.scope["input"]["email"] == "b@example.com"
        assert first.scope["user"]["_id"] != second.scope["user"]["_id"]
        assert len(collections.records("users")) == 2
        assert engine.active_executions == []

    @pytest.mark.asyncio
    async def test_trace_context_restored(self, signup_graph):
        await ExecutionEngine(default_registry(MemoryCollections())).execute(
            compile_graph(signup_graph), input_data=SIGNUP_INPUT
        )
        assert get_trace_context() == {}

    @pytest.mark.asyncio
    async def test_request_context_reaches_handlers(self, signup_graph):
        seen = {}

        registry = default_registry(MemoryCollections())

        @registry.handler(NodeKind.RESPONSE)
        def capture(fields, scope):
            seen["auth"] = scope.request.get("authorization")
            seen["step"] = scope.step_id
            return {"status": 200, "body": {}}

        await ExecutionEngine(registry).execute(
            compile_graph(signup_graph),
            input_data=SIGNUP_INPUT,
            request={"authorization": "Bearer abc"},
        )

        assert seen == {"auth": "Bearer abc", "step": "step4"}


# === FAILURES ===


class TestFailedRun:
    @pytest.mark.asyncio
    async def test_failing_step_stops_execution(self, sink):
        collections = MemoryCollections(
            seed={"users": [{"email": "ada@example.com"}]}, unique={"users": ["email"]}
        )
        registry = default_registry(collections)
        respond = CountingHandler()
        registry.register(NodeKind.RESPONSE, respond)
        graph = make_graph(
            [
                ("in", NodeKind.INPUT, {"variables": ["email"]}),
                (
                    "insert",
                    NodeKind.DB_INSERT,
                    {"collection": "users", "data": {"email": "{{email}}"}},
                ),
                ("respond", NodeKind.RESPONSE, {}),
            ],
            [("in", "insert"), ("insert", "respond")],
        )

        result = await ExecutionEngine(registry, event_sink=sink).execute(
            compile_graph(graph), input_data={"email": "ada@example.com"}
        )

        assert sink.signatures() == [
            ("step_started", 1),
            ("step_finished", 1),
            ("step_started", 2),
            ("error", 2),
        ]
        assert sink.events[-1].data["reason"] == "duplicate key"
        assert respond.calls == 0
        assert result.status == ExecutionStatus.FAILED
        assert result.failed_step_index == 2
        assert result.failed_step_id == "step2"
        assert result.error == "duplicate key"
        assert result.error_details == {"collection": "users", "field": "email"}

    @pytest.mark.asyncio
    async def test_scope_holds_only_earlier_bindings(self):
        collections = MemoryCollections(
            seed={"users": [{"email": "ada@example.com"}]}, unique={"users": ["email"]}
        )
        registry = default_registry(collections)
        respond = CountingHandler()
        registry.register(NodeKind.RESPONSE, respond)

        result = await ExecutionEngine(registry).execute(
            compile_graph(duplicate_user_graph()), input_data={"email": "ada@example.com"}
        )

        assert result.failed_step_index == 3
        assert set(result.scope) == {"input", "foundData"}
        assert result.scope["foundData"]["email"] == "ada@example.com"
        assert respond.calls == 0
        assert [s.status.value for s in result.steps] == ["success", "success", "failed"]

    @pytest.mark.asyncio
    async def test_validation_failure_details(self, signup_graph):
        result = await ExecutionEngine(default_registry(MemoryCollections())).execute(
            compile_graph(signup_graph), input_data={"email": "not-an-email", "password": "x"}
        )

        assert result.failed_step_id == "step2"
        assert result.error == "Input validation failed"
        assert result.error_details == {"input.email": ["Invalid email address"]}

    @pytest.mark.asyncio
    async def test_missing_required_input(self, signup_graph):
        result = await ExecutionEngine(default_registry(MemoryCollections())).execute(
            compile_graph(signup_graph), input_data={"email": "ada@example.com"}
        )

        assert result.failed_step_index == 1
        assert result.error == "Missing required input"
        assert result.error_details == {"password": ["Field is required"]}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self):
        registry = default_registry()

        @registry.handler(NodeKind.DB_FIND)
        async def explode(fields, scope):
            raise RuntimeError("connection reset")

        result = await ExecutionEngine(registry).execute(compile_graph(duplicate_user_graph()))

        assert result.failed_step_index == 2
        assert result.error == "connection reset"
        assert result.error_details == {"exception": "RuntimeError"}

    @pytest.mark.asyncio
    async def test_step_execution_error_from_handler(self):
        registry = default_registry()

        @registry.handler(NodeKind.DB_FIND)
        def not_found(fields, scope):
            raise StepExecutionError("not found", {"filters": fields["filters"]})

        result = await ExecutionEngine(registry).execute(
            compile_graph(duplicate_user_graph()), input_data={"email": "x@y.z"}
        )

        assert result.error == "not found"
        assert result.error_details == {"filters": {"email": "x@y.z"}}

    @pytest.mark.asyncio
    async def test_reserved_output_var_becomes_failure(self, sink):
        plan = Plan(
            workflow_id="wf-test",
            steps=[
                CompiledStep(id="step1", node_id="in", kind=NodeKind.INPUT),
                CompiledStep(
                    id="step2",
                    node_id="respond",
                    kind=NodeKind.RESPONSE,
                    resolved_fields={"status": 200, "body": {}},
                    output_var="input",
                ),
            ],
            initial_scope={"input": {"email": "a@example.com"}},
        )

        result = await ExecutionEngine(default_registry(), event_sink=sink).execute(plan)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_step_id == "step2"
        assert result.error_details == {"outputVar": "input"}
        assert result.scope["input"] == {"email": "a@example.com"}
        assert result.response is None
        assert sink.signatures() == [
            ("step_started", 1),
            ("step_finished", 1),
            ("step_started", 2),
            ("error", 2),
        ]

    @pytest.mark.asyncio
    async def test_missing_handler(self):
        result = await ExecutionEngine(HandlerRegistry()).execute(
            compile_graph(duplicate_user_graph())
        )

        assert result.failed_step_index == 1
        assert result.error == "No handler registered for step kind 'input'"

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_execution(self, signup_graph):
        engine = ExecutionEngine(default_registry(MemoryCollections()), event_sink=FailingSink())

        result = await engine.execute(compile_graph(signup_graph), input_data=SIGNUP_INPUT)

        assert result.success


# === DETERMINISM AND CANCELLATION ===


class TestDeterminismAndCancellation:
    def deterministic_registry(self) -> HandlerRegistry:
        registry = default_registry()
        registry.register(NodeKind.DB_FIND, CountingHandler({"_id": "u1", "email": "a@b.c"}))
        registry.register(NodeKind.DB_INSERT, CountingHandler({"_id": "u2"}))
        return registry

    @pytest.mark.asyncio
    async def test_identical_runs_match(self):
        plan = compile_graph(duplicate_user_graph())
        runs = []
        for _ in range(2):
            sink = RecordingSink()
            engine = ExecutionEngine(self.deterministic_registry(), event_sink=sink)
            result = await engine.execute(plan, input_data={"email": "a@b.c"})
            runs.append((result.scope, [e.signature() for e in sink.events]))

        assert runs[0] == runs[1]
        assert runs[0][0]["_response"] == {"status": 200, "body": {"id": "u2"}}

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, sink):
        cancel = asyncio.Event()
        cancel.set()
        registry = self.deterministic_registry()

        result = await ExecutionEngine(registry, event_sink=sink).execute(
            compile_graph(duplicate_user_graph()), cancel_event=cancel
        )

        assert result.status == ExecutionStatus.CANCELLED
        assert result.steps == []
        assert [e.type for e in sink.events] == [EventType.EXECUTION_FAILED]
        assert sink.events[0].data == {"reason": "cancelled", "stepsExecuted": 0}

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self):
        registry = self.deterministic_registry()
        engine = ExecutionEngine(registry)

        @registry.handler(NodeKind.DB_FIND)
        def cancel_after_find(fields, scope):
            assert engine.cancel(scope.execution_id)
            return {"_id": "u1"}

        result = await engine.execute(compile_graph(duplicate_user_graph()), execution_id="run-1")

        assert result.status == ExecutionStatus.CANCELLED
        assert result.execution_id == "run-1"
        assert result.steps_executed == 2
        assert "foundData" in result.scope
        assert "createdRecord" not in result.scope

    @pytest.mark.asyncio
    async def test_duplicate_execution_id_rejected(self):
        registry = self.deterministic_registry()
        engine = ExecutionEngine(registry)
        entered = asyncio.Event()
        release = asyncio.Event()

        @registry.handler(NodeKind.DB_FIND)
        async def blocking_find(fields, scope):
            entered.set()
            await release.wait()
            return None

        plan = compile_graph(duplicate_user_graph())
        first = asyncio.create_task(engine.execute(plan, execution_id="run-1"))
        await entered.wait()

        with pytest.raises(ValueError, match="already running"):
            await engine.execute(plan, execution_id="run-1")
        assert engine.active_executions == ["run-1"]

        release.set()
        result = await first
        assert result.success
        assert engine.active_executions == []

    def test_new_result_is_pending(self):
        assert ExecutionResult(execution_id="run-1").status == ExecutionStatus.PENDING

    def test_cancel_unknown_execution(self):
        assert not ExecutionEngine(HandlerRegistry()).cancel("missing")

    @pytest.mark.asyncio
    async def test_event_bus_as_sink(self, signup_graph):
        bus = EventBus()
        errors = []

        async def on_error(event):
            errors.append(event)

        bus.subscribe(event_types=[EventType.ERROR], handler=on_error)
        engine = ExecutionEngine(default_registry(MemoryCollections()), event_sink=bus)

        result = await engine.execute(compile_graph(signup_graph), input_data={"password": "x"})

        assert not result.success
        assert [e.step_index for e in errors] == [1]
        history = bus.get_history(execution_id=result.execution_id)
        assert [e.type for e in history] == [
            EventType.ERROR,
            EventType.STEP_STARTED,
        ]
