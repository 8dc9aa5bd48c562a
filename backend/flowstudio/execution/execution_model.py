"""
Execution Data Models — events, log entries and the tracked state.

Events arrive from the execution service as camelCase JSON objects::

    {"type": "node_completed", "nodeId": "fetch", "nodeState": {"output": {...}}}

``ExecutionState`` is an immutable projection of a run; it only ever
changes through ``reduce_execution`` (or the tracker's local bookkeeping
for lost connections and cancellation).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class EventType(str, Enum):
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    CONTEXT_UPDATED = "context_updated"
    LOG = "log"


NODE_EVENTS = (EventType.NODE_STARTED, EventType.NODE_COMPLETED, EventType.NODE_FAILED)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class LogEntry(_CamelModel):
    timestamp: str
    level: str = "info"
    message: str
    node_id: Optional[str] = None
    metadata: Dict[str, Any] = {}


class NodeState(_CamelModel):
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output: Any = None
    error: Optional[str] = None


class NodeStatePatch(_CamelModel):
    """Partial node state carried by node events."""
    status: Optional[str] = None
    output: Any = None
    error: Optional[str] = None


class ExecutionEvent(_CamelModel):
    type: EventType
    node_id: Optional[str] = None
    status: Optional[str] = None
    current_node_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    node_state: Optional[NodeStatePatch] = None
    log: Optional[LogEntry] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "ExecutionEvent":
        if self.type in NODE_EVENTS and not self.node_id:
            raise ValueError(f"'{self.type.value}' event requires nodeId")
        if self.type == EventType.LOG and self.log is None:
            raise ValueError("'log' event requires a log entry")
        return self


class ExecutionState(_CamelModel):
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_node_id: Optional[str] = None
    node_states: Dict[str, NodeState] = {}
    context: Dict[str, Any] = {}
    logs: Tuple[LogEntry, ...] = ()
    max_logs: int = 1000
    error: Optional[str] = None
    # Command acknowledged by the service but not yet confirmed by an event
    requested_command: Optional[str] = None

    def node_status(self, node_id: str) -> Optional[NodeStatus]:
        state = self.node_states.get(node_id)
        return state.status if state else None

    @property
    def running_nodes(self) -> Tuple[str, ...]:
        return tuple(n for n, s in self.node_states.items() if s.status == NodeStatus.RUNNING)
