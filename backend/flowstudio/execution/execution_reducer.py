"""
Execution Reducer — pure ``(state, event) -> state`` transition function.

Rules:

* Once the run is completed, failed or cancelled, later events are ignored.
* A node that reached a terminal status (completed, failed, skipped)
  never changes again, so duplicated or late node events are no-ops.
* Status moves ``running -> paused -> running`` only; pause and resume
  events from any other status are ignored.
* Ending the run settles nodes still running: ``workflow_completed``
  completes them, ``workflow_failed`` fails them, cancellation skips
  them. ``workflow_completed`` also marks nodes that never started as
  skipped.
* Logs form a ring buffer of at most ``state.max_logs`` entries.

Unchanged inputs are returned as the same object, which lets callers
skip notifying listeners.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional

from flowstudio.execution.execution_model import (
    EventType,
    ExecutionEvent,
    ExecutionState,
    ExecutionStatus,
    LogEntry,
    NodeState,
    NodeStatus,
    utc_now,
)


def initial_state(node_ids: Iterable[str] = (), max_logs: int = 1000, **fields) -> ExecutionState:
    return ExecutionState(
        node_states={node_id: NodeState() for node_id in node_ids},
        max_logs=max_logs,
        **fields,
    )


def append_log(state: ExecutionState, entry: LogEntry) -> ExecutionState:
    """Append ``entry``, dropping the oldest entries beyond ``max_logs``."""
    if state.max_logs <= 0:
        return state
    logs = state.logs + (entry,)
    if len(logs) > state.max_logs:
        logs = logs[len(logs) - state.max_logs:]
    return state.model_copy(update={"logs": logs})


def _update_node(state: ExecutionState, node_id: str, **changes) -> ExecutionState:
    current = state.node_states.get(node_id, NodeState())
    if current.status.is_terminal:
        return state
    node_states: Dict[str, NodeState] = dict(state.node_states)
    node_states[node_id] = current.model_copy(update=changes)
    return state.model_copy(update={"node_states": node_states})


# ── Handlers ──


def _node_started(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    updated = _update_node(state, event.node_id, status=NodeStatus.RUNNING, started_at=event.timestamp)
    if updated is state:
        return state
    update = {"current_node_id": event.node_id}
    if state.status in (ExecutionStatus.IDLE, ExecutionStatus.PENDING):
        update["status"] = ExecutionStatus.RUNNING
    return updated.model_copy(update=update)


def _node_finished(state: ExecutionState, event: ExecutionEvent, status: NodeStatus) -> ExecutionState:
    patch = event.node_state
    changes = {"status": status, "completed_at": event.timestamp}
    if status == NodeStatus.COMPLETED and patch is not None:
        changes["output"] = patch.output
    if status == NodeStatus.FAILED:
        changes["error"] = (patch.error if patch else None) or event.error
    updated = _update_node(state, event.node_id, **changes)
    if updated is state or state.current_node_id != event.node_id:
        return updated
    return updated.model_copy(update={"current_node_id": None})


def _node_completed(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return _node_finished(state, event, NodeStatus.COMPLETED)


def _node_failed(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return _node_finished(state, event, NodeStatus.FAILED)


def _settle_nodes(
    state: ExecutionState,
    running: NodeStatus,
    timestamp: Optional[str],
    pending: Optional[NodeStatus] = None,
) -> Dict[str, NodeState]:
    """Close out the nodes a finished run left open."""
    settled: Dict[str, NodeState] = {}
    for node_id, s in state.node_states.items():
        if s.status == NodeStatus.RUNNING:
            s = s.model_copy(update={"status": running, "completed_at": timestamp})
        elif s.status == NodeStatus.PENDING and pending is not None:
            s = s.model_copy(update={"status": pending})
        settled[node_id] = s
    return settled


def _paused(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    if state.status != ExecutionStatus.RUNNING:
        return state
    return state.model_copy(update={
        "status": ExecutionStatus.PAUSED,
        "requested_command": None if state.requested_command == "pause" else state.requested_command,
    })


def _resumed(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    if state.status != ExecutionStatus.PAUSED:
        return state
    return state.model_copy(update={
        "status": ExecutionStatus.RUNNING,
        "requested_command": None if state.requested_command == "resume" else state.requested_command,
    })


def _completed(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return state.model_copy(update={
        "status": ExecutionStatus.COMPLETED,
        "current_node_id": None,
        "node_states": _settle_nodes(state, NodeStatus.COMPLETED, event.timestamp, pending=NodeStatus.SKIPPED),
        "requested_command": None,
    })


def _failed(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    error = event.error or (event.node_state.error if event.node_state else None)
    return state.model_copy(update={
        "status": ExecutionStatus.FAILED,
        "current_node_id": None,
        "node_states": _settle_nodes(state, NodeStatus.FAILED, event.timestamp),
        "error": error,
        "requested_command": None,
    })


def _cancelled(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return mark_cancelled(state)


def _context_updated(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return state.model_copy(update={"context": dict(event.context or {})})


def _log(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    return append_log(state, event.log)


_HANDLERS: Dict[EventType, Callable[[ExecutionState, ExecutionEvent], ExecutionState]] = {
    EventType.NODE_STARTED: _node_started,
    EventType.NODE_COMPLETED: _node_completed,
    EventType.NODE_FAILED: _node_failed,
    EventType.WORKFLOW_PAUSED: _paused,
    EventType.WORKFLOW_RESUMED: _resumed,
    EventType.WORKFLOW_COMPLETED: _completed,
    EventType.WORKFLOW_FAILED: _failed,
    EventType.WORKFLOW_CANCELLED: _cancelled,
    EventType.CONTEXT_UPDATED: _context_updated,
    EventType.LOG: _log,
}

_unhandled = [t.value for t in EventType if t not in _HANDLERS]
if _unhandled:
    raise RuntimeError(f"Execution events without a reducer: {_unhandled}")


def reduce_execution(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    """Apply one event. Returns ``state`` itself when nothing changes."""
    if state.status.is_terminal:
        return state
    return _HANDLERS[event.type](state, event)


def mark_cancelled(state: ExecutionState, message: Optional[str] = None) -> ExecutionState:
    """Local cancellation: stop tracking and record the cancelled status."""
    if state.status.is_terminal:
        return state
    cancelled = state.model_copy(update={
        "status": ExecutionStatus.CANCELLED,
        "current_node_id": None,
        "node_states": _settle_nodes(state, NodeStatus.SKIPPED, utc_now()),
        "requested_command": None,
    })
    if message:
        cancelled = append_log(cancelled, LogEntry(timestamp=utc_now(), level="warn", message=message))
    return cancelled
