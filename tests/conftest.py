"""Shared fixtures: small workflow graphs and a recording event sink."""

import logging
from typing import Any

import pytest

from stepflow.graph.edge import EdgeSpec, GraphSpec
from stepflow.graph.node import NodeKind, NodeSpec
from stepflow.graph.schema import DictSchemaLookup
from stepflow.observability import clear_trace_context
from stepflow.runtime.event_bus import WorkflowEvent


def make_graph(nodes: list[tuple[str, str, dict[str, Any]]], edges: list[tuple[str, str]]):
    """Build a GraphSpec from (id, kind, fields) triples and (source, target) pairs."""
    return GraphSpec(
        id="wf-test",
        nodes=[NodeSpec(id=node_id, kind=kind, fields=fields) for node_id, kind, fields in nodes],
        edges=[EdgeSpec(source=source, target=target) for source, target in edges],
    )


class RecordingSink:
    """Event sink that keeps every published event in order."""

    def __init__(self):
        self.events: list[WorkflowEvent] = []

    async def publish(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def signatures(self) -> list[tuple]:
        return [(e.type.value, e.step_index) for e in self.events]


@pytest.fixture(autouse=True)
def _isolate_logging_and_trace():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    clear_trace_context()
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    clear_trace_context()


@pytest.fixture(autouse=True)
def _no_user_config(tmp_path, monkeypatch):
    """Never read the developer's ~/.stepflow/configuration.json."""
    monkeypatch.setattr("stepflow.config.STEPFLOW_CONFIG_FILE", tmp_path / "no-config.json")
    monkeypatch.delenv("STEPFLOW_UNRESOLVED_REFERENCES", raising=False)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def users_schema() -> DictSchemaLookup:
    return DictSchemaLookup({"users": ["_id", "email", "name"]})


@pytest.fixture
def signup_graph() -> GraphSpec:
    """Input(email, password) → InputValidation → DbInsert(users) → Response."""
    return make_graph(
        [
            (
                "input_main",
                NodeKind.INPUT,
                {
                    "variables": [
                        {"name": "email", "required": True},
                        {"name": "password", "required": True},
                    ]
                },
            ),
            (
                "validate",
                NodeKind.INPUT_VALIDATION,
                {"rules": [{"field": "{{email}}", "required": True, "type": "email"}]},
            ),
            (
                "create_user",
                NodeKind.DB_INSERT,
                {
                    "collection": "users",
                    "data": {"email": "{{email}}", "password": "{{password}}"},
                    "outputVar": "user",
                },
            ),
            (
                "respond",
                NodeKind.RESPONSE,
                {"status": 201, "body": {"id": "{{user._id}}", "email": "{{user.email}}"}},
            ),
        ],
        [
            ("input_main", "validate"),
            ("validate", "create_user"),
            ("create_user", "respond"),
        ],
    )


@pytest.fixture
def find_update_graph() -> GraphSpec:
    """Input(email) → DbFind(users, full pass) → DbUpdate(users)."""
    return make_graph(
        [
            ("input_main", NodeKind.INPUT, {"variables": [{"name": "email"}]}),
            (
                "find_user",
                NodeKind.DB_FIND,
                {"collection": "users", "filters": {"email": "{{email}}"}},
            ),
            (
                "update_user",
                NodeKind.DB_UPDATE,
                {
                    "collection": "users",
                    "filter": {"_id": "{{foundData._id}}"},
                    "data": {"$set": {"name": "{{foundData.name}} Jr."}},
                },
            ),
        ],
        [("input_main", "find_user"), ("find_user", "update_user")],
    )
