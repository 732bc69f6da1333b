"""Pydantic models for per-step execution records.

One StepLog is written for every step the engine attempts, in plan order.
Input and output values are stored redacted; they are diagnostics, not data.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StepStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class StepLog(BaseModel):
    """What happened when one step ran."""

    step_index: int  # 1-based position in the plan
    step_id: str
    node_id: str
    kind: str
    label: str = ""
    status: StepStatus
    input: dict[str, Any] = Field(default_factory=dict)  # redacted resolved fields
    output: Any = None  # redacted handler value (success only)
    output_var: str | None = None
    error: str = ""
    error_details: Any = None
    duration_ms: int = 0
    started_at: str = ""  # ISO timestamp
    execution_id: str = ""
