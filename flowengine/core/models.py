"""Data models for the workflow execution engine.

Uses Pydantic for the persisted rows (executions, suspensions, audit records)
and for the in-memory execution context threaded through node interpretation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Lifecycle of one workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # Suspended at a delay / wait-for-event node
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"  # Halted by a STOP_WORKFLOW action


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.STOPPED}
)


class EntityRefs(BaseModel):
    """Identity references shared by executions, triggers and contexts."""

    contact_id: str | None = None
    lead_id: str | None = None
    opportunity_id: str | None = None
    email_address: str | None = None
    phone_number: str | None = None


class TriggerContext(EntityRefs):
    """What external trigger detection hands to ``enqueue_execution``."""

    payload: dict[str, Any] = Field(default_factory=dict)


class ExecutedNode(BaseModel):
    """Audit entry; also the cycle/replay guard."""

    node_id: str
    kind: str
    timestamp: datetime = Field(default_factory=utc_now)


class GoalRegistration(BaseModel):
    node_id: str
    goal_type: str | None = None
    skip_to_node_id: str | None = None


class Execution(EntityRefs):
    """Persisted execution row."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    executed_nodes: list[ExecutedNode] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    current_node_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None

    @property
    def executed_node_ids(self) -> list[str]:
        return [n.node_id for n in self.executed_nodes]


class ExecutionContext(EntityRefs):
    """Per-run mutable state, rebuilt from the Execution row on every run/resume."""

    execution_id: str
    workflow_id: str
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    executed_nodes: list[ExecutedNode] = Field(default_factory=list)
    goals: list[GoalRegistration] = Field(default_factory=list)

    @classmethod
    def from_execution(cls, execution: Execution) -> ExecutionContext:
        return cls(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            contact_id=execution.contact_id,
            lead_id=execution.lead_id,
            opportunity_id=execution.opportunity_id,
            email_address=execution.email_address,
            phone_number=execution.phone_number,
            trigger_payload=dict(execution.trigger_payload),
            variables=dict(execution.variables),
            executed_nodes=list(execution.executed_nodes),
        )

    @property
    def executed_node_ids(self) -> list[str]:
        return [n.node_id for n in self.executed_nodes]

    def has_executed(self, node_id: str) -> bool:
        return any(n.node_id == node_id for n in self.executed_nodes)

    def record_entry(self, node_id: str, kind: str) -> None:
        self.executed_nodes.append(ExecutedNode(node_id=node_id, kind=kind))


class SuspensionKind(str, Enum):
    TIME_DELAY = "TIME_DELAY"
    WAIT_UNTIL = "WAIT_UNTIL"
    WAIT_FOR_EVENT = "WAIT_FOR_EVENT"


class SuspensionStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"


class DelaySuspension(BaseModel):
    """Durable pause point of an execution."""

    id: int | None = None
    execution_id: str
    workflow_id: str
    node_id: str
    kind: SuspensionKind
    resume_at: datetime | None = None
    wait_event_type: str | None = None
    timeout_at: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    status: SuspensionStatus = SuspensionStatus.WAITING
    created_at: datetime = Field(default_factory=utc_now)
    resumed_at: datetime | None = None


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    STOPPED = "stopped"


class ActionRecord(BaseModel):
    """Append-only audit row, one per executed action node."""

    id: int | None = None
    execution_id: str
    node_id: str
    action_type: str
    config: dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus
    result: Any = None
    error_message: str | None = None
    executed_at: datetime = Field(default_factory=utc_now)


class ConditionRecord(BaseModel):
    """Audit row for an evaluated condition node."""

    id: int | None = None
    execution_id: str
    node_id: str
    condition_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    result: bool
    path_taken: str
    evaluated_at: datetime = Field(default_factory=utc_now)


class GoalRecord(BaseModel):
    id: int | None = None
    workflow_id: str
    execution_id: str
    node_id: str
    goal_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    skip_to_node_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    achieved_at: datetime | None = None


class Variant(str, Enum):
    """Split-test arms, in allocation order."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"


class SplitTestState(BaseModel):
    workflow_id: str
    node_id: str
    name: str = "Split Test"
    variant_weights: dict[Variant, float] = Field(default_factory=dict)
    variant_counts: dict[Variant, int] = Field(
        default_factory=lambda: {v: 0 for v in Variant}
    )

    @property
    def total_count(self) -> int:
        return sum(self.variant_counts.values())
