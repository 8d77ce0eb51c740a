"""Run, outcome and decision records.

A RunRecord is one attempt of one agent executing one phase for one issue.
It is created as ``pending`` at dispatch time and updated exactly once to a
terminal status. DecisionRecords are the append-only audit trail written at
every decision point.
"""

import random
import string
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.BLOCKED)


class DecisionType(str, Enum):
    AGENT_SELECTION = "agent_selection"
    PHASE_TRANSITION = "phase_transition"
    RETRY = "retry"
    HITL = "hitl"
    TIMEOUT = "timeout"
    DYNAMIC_DECISION = "dynamic_decision"
    WORKER_ASSISTANT = "worker_assistant"
    MESSAGE_SEND = "message_send"
    MESSAGE_RECEIPT = "message_receipt"


class Artifact(BaseModel):
    path: str
    operation: Literal["created", "modified", "deleted"] = "modified"
    size: Optional[int] = None


class ErrorDetails(BaseModel):
    type: Optional[str] = None
    message: Optional[str] = None
    stack_trace: Optional[str] = None
    file_path: Optional[str] = None
    line_number: Optional[int] = None


class ToolCall(BaseModel):
    name: str
    inputs: Any = None
    outputs: Optional[str] = None
    duration_ms: Optional[int] = None
    status: Literal["completed", "error", "cancelled"] = "completed"


class RunMetrics(BaseModel):
    duration_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    start_time_ms: Optional[int] = None
    end_time_ms: Optional[int] = None
    api_calls_count: Optional[int] = None
    model_name: Optional[str] = None


class Outcome(BaseModel):
    """Structured result of a run, consumed read-only by the transition engine."""

    success: bool
    message: str = ""
    artifacts: List[Artifact] = Field(default_factory=list)
    requires_approval: bool = False
    error: Optional[str] = None
    error_details: Optional[ErrorDetails] = None
    warnings: List[str] = Field(default_factory=list)
    tool_calls: List[ToolCall] = Field(default_factory=list)
    metrics: RunMetrics = Field(default_factory=RunMetrics)

    @classmethod
    def failure(cls, error: str, duration_ms: Optional[int] = None, **kwargs) -> "Outcome":
        """Build a failed outcome for errors raised outside the agent platform."""
        return cls(
            success=False,
            message=error,
            error=error,
            metrics=RunMetrics(duration_ms=duration_ms),
            **kwargs,
        )


def _now() -> datetime:
    return datetime.now(UTC)


def generate_run_id() -> str:
    """Run ids sort by creation time: ``run-<epoch ms>-<random suffix>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"run-{int(time.time() * 1000)}-{suffix}"


def generate_decision_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"decision-{int(time.time() * 1000)}-{suffix}"


class RunRecord(BaseModel):
    """One phase attempt for one issue."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=generate_run_id)
    issue_id: str
    agent_id: str
    policy_name: str
    phase: str
    session_id: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    outcome: Optional[Outcome] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer("created_at", "updated_at", "completed_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @property
    def is_terminal(self) -> bool:
        return RunStatus(self.status).is_terminal

    @property
    def tokens_used(self) -> int:
        if self.outcome and self.outcome.metrics.tokens_used:
            return self.outcome.metrics.tokens_used
        return 0

    @property
    def duration_ms(self) -> Optional[int]:
        if self.outcome is None:
            return None
        return self.outcome.metrics.duration_ms


class DecisionRecord(BaseModel):
    """Append-only audit entry for a decision point."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=generate_decision_id)
    run_id: str
    timestamp: datetime = Field(default_factory=_now)
    type: DecisionType
    decision: str
    reasoning: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer("timestamp")
    def serialize_timestamp(self, v: datetime) -> str:
        return v.isoformat()
