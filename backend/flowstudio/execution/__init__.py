"""
Execution Tracking — client-side projection of remote workflow runs.

Architecture:
    execution_model    — events, log entries, ExecutionState
    execution_reducer  — pure (state, event) -> state transitions
    execution_client   — ExecutionService ABC + httpx implementation
    execution_tracker  — ExecutionTracker + EventSubscription
"""

from flowstudio.execution.execution_model import (
    EventType,
    ExecutionEvent,
    ExecutionState,
    ExecutionStatus,
    LogEntry,
    NodeState,
    NodeStatus,
)
from flowstudio.execution.execution_reducer import initial_state, reduce_execution
from flowstudio.execution.execution_client import ExecutionService, HttpExecutionService
from flowstudio.execution.execution_tracker import EventSubscription, ExecutionTracker

__all__ = [
    "EventType",
    "ExecutionEvent",
    "ExecutionState",
    "ExecutionStatus",
    "LogEntry",
    "NodeState",
    "NodeStatus",
    "initial_state",
    "reduce_execution",
    "ExecutionService",
    "HttpExecutionService",
    "EventSubscription",
    "ExecutionTracker",
]
