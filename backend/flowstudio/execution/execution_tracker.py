"""
Execution Tracker — live projection of one workflow run.

    ExecutionTracker
      ├── ExecutionService     commands (start/pause/resume/cancel) + stream
      ├── EventSubscription    one asyncio task draining the stream
      └── reduce_execution     pure state transitions

The tracker owns at most one subscription; ``connect`` closes the
previous one first. Stream failures, including the stream ending before
a terminal event, are recorded as a log entry and release the
subscription without reconnecting. Event handling never
raises: malformed events are logged and dropped so the stream stays
alive.
"""

from __future__ import annotations

import asyncio
import json
from logging import getLogger
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from pydantic import ValidationError

from flowstudio.config import StudioConfig, get_studio_config
from flowstudio.errors import StreamError
from flowstudio.execution.execution_client import ExecutionService
from flowstudio.execution.execution_model import (
    ExecutionEvent,
    ExecutionState,
    ExecutionStatus,
    LogEntry,
    utc_now,
)
from flowstudio.execution.execution_reducer import (
    append_log,
    initial_state,
    mark_cancelled,
    reduce_execution,
)

logger = getLogger(__name__)

LOST_CONNECTION_MESSAGE = "Lost connection to execution stream"

StateListener = Callable[[ExecutionState], None]


class EventSubscription:
    """A single consumer task over an execution event stream.

    ``on_event`` is called for every raw event in delivery order.
    ``on_error`` is called once if the stream fails or ends while the
    subscription is still open. ``close()`` sets the
    cancellation token and cancels the task; no callback fires after it.
    """

    def __init__(
        self,
        execution_id: str,
        events: Callable[[], Any],
        on_event: Callable[[Any], None],
        on_error: Optional[Callable[[StreamError], None]] = None,
    ):
        self.execution_id = execution_id
        self.on_event = on_event
        self.on_error = on_error
        self.cancel_token = asyncio.Event()
        self._events = events
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self.cancel_token.is_set()

    def start(self) -> "EventSubscription":
        """Spawn the consumer task. Requires a running event loop."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def _run(self) -> None:
        events = self._events()
        try:
            async for raw in events:
                self.on_event(raw)
                # on_event may close us (terminal status)
                if self.closed:
                    break
            else:
                if not self.closed:
                    self._fail(StreamError(
                        f"Execution stream {self.execution_id} ended before the run finished"
                    ))
        except StreamError as e:
            if not self.closed:
                self._fail(e)
        except Exception as e:
            if not self.closed:
                error = StreamError(f"Execution stream failed: {e}")
                error.__cause__ = e
                self._fail(error)
        finally:
            self.cancel_token.set()
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    def _fail(self, error: StreamError) -> None:
        logger.warning(f"Execution stream {self.execution_id} lost: {error}")
        self.cancel_token.set()
        if self.on_error is not None:
            self.on_error(error)

    def close(self) -> None:
        if self.closed and (self._task is None or self._task.done()):
            return
        self.cancel_token.set()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the consumer task has finished."""
        if self._task is None or self._task is asyncio.current_task():
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class ExecutionTracker:
    """Tracks one execution at a time for a set of workflow nodes."""

    def __init__(
        self,
        service: ExecutionService,
        node_ids: Iterable[str] = (),
        config: Optional[StudioConfig] = None,
    ):
        self.service = service
        self.config = config or get_studio_config()
        self.node_ids = tuple(node_ids)
        self.state = initial_state(self.node_ids, max_logs=self.config.max_log_entries)
        self._listeners: List[StateListener] = []
        self._subscription: Optional[EventSubscription] = None

    # ── Listeners ──

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ExecutionState) -> None:
        if state is self.state:
            return
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Execution state listener failed")

    # ── Subscription ──

    @property
    def subscription(self) -> Optional[EventSubscription]:
        return self._subscription

    @property
    def connected(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def connect(self, execution_id: str) -> EventSubscription:
        """Subscribe to ``execution_id``, closing any previous subscription.

        Reconnecting to the tracked execution keeps its state; any other
        id starts from a fresh state.
        """
        self.disconnect()
        if self.state.execution_id != execution_id:
            self._set_state(initial_state(
                self.node_ids,
                max_logs=self.config.max_log_entries,
                execution_id=execution_id,
                workflow_id=self.state.workflow_id,
            ))

        subscription = EventSubscription(
            execution_id,
            lambda: self.service.stream(execution_id),
            on_event=self.handle_event,
            on_error=lambda error: self._on_stream_error(subscription, error),
        )
        self._subscription = subscription.start()
        logger.info(f"Connected to execution stream {execution_id}")
        return subscription

    def disconnect(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()
            logger.info(f"Disconnected from execution stream {subscription.execution_id}")

    def _on_stream_error(self, subscription: EventSubscription, error: StreamError) -> None:
        if self._subscription is subscription:
            self._subscription = None
        self._set_state(append_log(self.state, LogEntry(
            timestamp=utc_now(),
            level="error",
            message=LOST_CONNECTION_MESSAGE,
            metadata={"error": str(error)},
        )))

    # ── Commands ──

    async def start(self, workflow_id: str) -> str:
        """Start a run of ``workflow_id`` and begin tracking it.

        Raises:
            CommandError: If the service refuses; state is left unchanged.
        """
        execution_id = await self.service.start(workflow_id)
        self.disconnect()
        self._set_state(initial_state(
            self.node_ids,
            max_logs=self.config.max_log_entries,
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.PENDING,
        ))
        self.connect(execution_id)
        return execution_id

    async def pause(self) -> None:
        await self._command("pause", self.service.pause)

    async def resume(self) -> None:
        await self._command("resume", self.service.resume)

    async def cancel(self) -> None:
        """Request cancellation and stop tracking locally.

        The remote run is not guaranteed to have stopped.
        """
        execution_id = self.state.execution_id
        if execution_id is None:
            logger.warning("cancel requested without an active execution")
            return
        await self.service.cancel(execution_id)
        self.disconnect()
        self._set_state(mark_cancelled(self.state))

    async def _command(self, name: str, send: Callable[[str], Awaitable[None]]) -> None:
        execution_id = self.state.execution_id
        if execution_id is None:
            logger.warning(f"{name} requested without an active execution")
            return
        await send(execution_id)
        if not self.state.status.is_terminal:
            self._set_state(self.state.model_copy(update={"requested_command": name}))

    # ── Events ──

    def handle_event(self, raw: Any) -> None:
        """Apply one inbound event. Never raises."""
        try:
            event = _coerce_event(raw)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed execution event: {e}")
            return

        if event.timestamp is None:
            event = event.model_copy(update={"timestamp": utc_now()})
        logger.debug(f"Execution event {event.type.value} node={event.node_id}")

        self._set_state(reduce_execution(self.state, event))
        if self.state.status.is_terminal:
            self.disconnect()

    def reset(self) -> None:
        """Drop the subscription and return to an idle state."""
        self.disconnect()
        self._set_state(initial_state(self.node_ids, max_logs=self.config.max_log_entries))


def _coerce_event(raw: Any) -> ExecutionEvent:
    if isinstance(raw, ExecutionEvent):
        return raw
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise TypeError(f"expected an event object, got {type(raw).__name__}")
    return ExecutionEvent.model_validate(raw)
