"""Tests for WorkflowStore - graph and plan persistence."""

import json
from pathlib import Path

import pytest

from stepflow.graph.compiler import compile_graph
from stepflow.storage import WorkflowStore


class TestWorkflowStore:
    @pytest.mark.asyncio
    async def test_graph_round_trip(self, tmp_path: Path, signup_graph):
        store = WorkflowStore(tmp_path)

        await store.save_graph("signup", signup_graph)
        loaded = await store.load_graph("signup")

        assert loaded.model_dump() == signup_graph.model_dump()
        raw = json.loads((tmp_path / "workflows" / "signup" / "graph.json").read_text())
        assert raw["nodes"][0]["type"] == "input"

    @pytest.mark.asyncio
    async def test_plan_round_trip(self, tmp_path: Path, signup_graph):
        store = WorkflowStore(tmp_path)
        plan = compile_graph(signup_graph)

        await store.save_plan("signup", plan)

        assert await store.load_plan("signup") == plan

    @pytest.mark.asyncio
    async def test_missing_files(self, tmp_path: Path):
        store = WorkflowStore(tmp_path)
        assert await store.load_graph("nothing") is None
        assert await store.load_plan("nothing") is None
        assert await store.list_workflows() == []

    @pytest.mark.asyncio
    async def test_list_and_delete(self, tmp_path: Path, signup_graph):
        store = WorkflowStore(tmp_path)
        await store.save_graph("b-flow", signup_graph)
        await store.save_graph("a-flow", signup_graph)

        assert await store.list_workflows() == ["a-flow", "b-flow"]
        assert await store.delete_workflow("a-flow")
        assert not await store.delete_workflow("a-flow")
        assert await store.list_workflows() == ["b-flow"]

    @pytest.mark.parametrize("bad_id", ["", "  ", "../etc", "a/b", "a\\b", ".hidden"])
    def test_rejects_unsafe_ids(self, tmp_path: Path, bad_id):
        with pytest.raises(ValueError):
            WorkflowStore(tmp_path).get_workflow_path(bad_id)

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path: Path, signup_graph):
        store = WorkflowStore(tmp_path)
        await store.save_graph("signup", signup_graph)
        await store.save_graph("signup", signup_graph)

        files = sorted(p.name for p in (tmp_path / "workflows" / "signup").iterdir())
        assert files == ["graph.json"]
