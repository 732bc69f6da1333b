"""
Workflow Store - file-backed persistence of graphs and compiled plans.

Layout:
  {base_path}/workflows/{workflow_id}/
    ├── graph.json    # Editor graph as authored
    └── plan.json     # Last compiled plan
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path

from stepflow.graph.edge import GraphSpec, parse_graph
from stepflow.graph.plan import Plan
from stepflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class WorkflowStore:
    """Stores graphs and plans by workflow id."""

    def __init__(self, base_path: str | Path):
        """
        Initialize workflow store.

        Args:
            base_path: Base directory (e.g., ~/.stepflow)
        """
        self.base_path = Path(base_path)
        self.workflows_dir = self.base_path / "workflows"

    def _validate_key(self, key: str) -> None:
        """
        Validate a workflow id to prevent path traversal.

        Raises:
            ValueError: If the id is empty or contains path components
        """
        if not key or key.strip() == "":
            raise ValueError("Workflow id cannot be empty")
        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid workflow id: path separators not allowed in '{key}'")
        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid workflow id: path traversal detected in '{key}'")

    def get_workflow_path(self, workflow_id: str) -> Path:
        self._validate_key(workflow_id)
        return self.workflows_dir / workflow_id

    async def save_graph(self, workflow_id: str, graph: GraphSpec) -> None:
        """Atomically write graph.json for a workflow."""
        path = self.get_workflow_path(workflow_id) / "graph.json"

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                json.dump(graph.to_wire(), f, indent=2)

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote graph.json for workflow {workflow_id}")

    async def load_graph(self, workflow_id: str) -> GraphSpec | None:
        """Read graph.json; None if the workflow has no saved graph."""
        path = self.get_workflow_path(workflow_id) / "graph.json"

        def _read():
            if not path.exists():
                return None
            return parse_graph(json.loads(path.read_text(encoding="utf-8")))

        return await asyncio.to_thread(_read)

    async def save_plan(self, workflow_id: str, plan: Plan) -> None:
        """Atomically write plan.json for a workflow."""
        path = self.get_workflow_path(workflow_id) / "plan.json"

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(plan.to_json())

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote plan.json for workflow {workflow_id}")

    async def load_plan(self, workflow_id: str) -> Plan | None:
        """Read plan.json; None if the workflow has no compiled plan."""
        path = self.get_workflow_path(workflow_id) / "plan.json"

        def _read():
            if not path.exists():
                return None
            return Plan.from_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_workflows(self) -> list[str]:
        """Ids of every stored workflow, sorted."""

        def _scan():
            if not self.workflows_dir.exists():
                return []
            return sorted(p.name for p in self.workflows_dir.iterdir() if p.is_dir())

        return await asyncio.to_thread(_scan)

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow and its files; False if it did not exist."""
        path = self.get_workflow_path(workflow_id)

        def _delete():
            if not path.exists():
                return False
            shutil.rmtree(path)
            logger.info(f"Deleted workflow {workflow_id}")
            return True

        return await asyncio.to_thread(_delete)
