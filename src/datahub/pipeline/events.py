"""Pipeline event system.

Typed engine and domain events emitted during a run for UIs, audit logs
and integrations.  Delivery is fire-and-forget: a failing listener is
logged and never affects the run.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class PipelineEventType(str, enum.Enum):
    """Typed event categories emitted during pipeline execution."""

    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_TIMEOUT = "run_timeout"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRY = "step_retry"
    RECORD_REJECTED = "record_rejected"
    CHECKPOINT_SAVED = "checkpoint_saved"
    GATE_PAUSED = "gate_paused"
    GATE_APPROVED = "gate_approved"
    GATE_REJECTED = "gate_rejected"
    GATE_TIMEOUT = "gate_timeout"
    CIRCUIT_OPENED = "circuit_opened"
    THROUGHPUT_DRAINED = "throughput_drained"
    RUN_REPLAYED = "run_replayed"
    PIPELINE_TRIGGERED = "pipeline_triggered"
    HOOK_EMIT = "hook_emit"


@dataclass
class PipelineEvent:
    """A single pipeline lifecycle event.

    Attributes:
        type: The event category.
        run_id: Run the event belongs to (empty for process-level events).
        step_key: Key of the relevant step (empty for run-level events).
        pipeline_name: Name of the pipeline emitting this event.
        timestamp: UNIX epoch when the event occurred.
        data: Arbitrary event-specific payload.
    """

    type: PipelineEventType
    run_id: str = ""
    step_key: str = ""
    pipeline_name: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "step_key": self.step_key,
            "pipeline_name": self.pipeline_name,
            "timestamp": self.timestamp,
            "data": self.data,
        }


EventCallback = Callable[[PipelineEvent], Coroutine[Any, Any, None]]


class PipelineEventEmitter:
    """Observer-pattern event emitter for pipeline lifecycle events.

    Register callbacks with :meth:`on` (one type) or :meth:`on_any`
    (every type) and fire events with :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: dict[PipelineEventType, list[EventCallback]] = defaultdict(
            list
        )
        self._wildcard: list[EventCallback] = []

    @property
    def listeners(self) -> dict[PipelineEventType, list[EventCallback]]:
        """Return the mapping of event types to registered callbacks."""
        return dict(self._listeners)

    def on(self, event_type: PipelineEventType, callback: EventCallback) -> None:
        """Register a callback for a specific event type.

        Args:
            event_type: The event category to listen for.
            callback: Async callable invoked when the event fires.
        """
        self._listeners[event_type].append(callback)

    def on_any(self, callback: EventCallback) -> None:
        """Register a callback for every event type."""
        self._wildcard.append(callback)

    async def emit(self, event: PipelineEvent) -> None:
        """Fire an event, invoking all registered callbacks.

        Exceptions in callbacks are logged but do not prevent
        other callbacks from running.

        Args:
            event: The event to emit.
        """
        for callback in [*self._listeners.get(event.type, []), *self._wildcard]:
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    "Event callback error for %s: %s",
                    event.type.value,
                    exc,
                )
