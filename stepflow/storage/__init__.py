"""Persistence of workflow graphs and compiled plans."""

from stepflow.storage.workflow_store import WorkflowStore

__all__ = ["WorkflowStore"]
