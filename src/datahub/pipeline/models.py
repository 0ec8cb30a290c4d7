"""Pipeline data models.

Defines the pipeline definition graph (steps and edges), the result a
step executor reports, per-record errors, and the :class:`Run` that
tracks one execution of a definition.
"""

from __future__ import annotations

import copy
import enum
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from datahub.pipeline.resilience import RetryPolicy

Record = dict[str, Any]


class StepKind(str, enum.Enum):
    """Kinds of pipeline steps."""

    TRIGGER = "TRIGGER"
    EXTRACT = "EXTRACT"
    TRANSFORM = "TRANSFORM"
    VALIDATE = "VALIDATE"
    ENRICH = "ENRICH"
    ROUTE = "ROUTE"
    LOAD = "LOAD"
    EXPORT = "EXPORT"
    FEED = "FEED"
    SINK = "SINK"
    GATE = "GATE"

    @classmethod
    def parse(cls, value: str) -> StepKind:
        """Parse a kind name case-insensitively.

        Raises:
            ValueError: If *value* is not a known kind.
        """
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown step kind: {value!r}") from None


class RunStatus(str, enum.Enum):
    """Lifecycle status of a pipeline run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        """Whether the run can make no further progress."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.TIMEOUT,
})


@dataclass
class Step:
    """A single node in the pipeline graph.

    Attributes:
        key: Unique identifier for this step.
        kind: Step kind; selects the executor.
        adapter: Adapter code resolved in the registry for *kind*.
        config: Adapter-specific configuration.
        label: Human-readable label for visualization.
        strict: Abort the run if the step reports any failed record.
        tolerate_errors: Keep the run going if the step raises; the
            step then produces no output.
        retry: Per-step retry policy for network-bound executors.
        batch_size: Chunk size for network-bound executors.
        timeout: Maximum execution time in seconds.
    """

    key: str
    kind: StepKind
    adapter: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    label: str = ""
    strict: bool = False
    tolerate_errors: bool = False
    retry: RetryPolicy | None = None
    batch_size: int | None = None
    timeout: float | None = None


@dataclass
class Edge:
    """A directed edge between two steps.

    Attributes:
        source: Key of the originating step.
        target: Key of the destination step.
        branch: Route branch carried by this edge.  ``None`` forwards
            the full output of the source.
    """

    source: str
    target: str
    branch: str | None = None


@dataclass
class Pipeline:
    """Complete pipeline definition.

    Attributes:
        name: Pipeline identifier.
        steps: Mapping of step key -> Step, in declaration order.
        edges: All directed edges, in declaration order.
        hooks: Mapping of hook stage name -> action configs or actions.
        timeout: Overall run timeout in seconds.
        metadata: Free-form definition metadata.
    """

    name: str
    steps: dict[str, Step] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)
    hooks: dict[str, list[Any]] = field(default_factory=dict)
    timeout: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def outgoing_edges(self, step_key: str) -> list[Edge]:
        """Return edges originating from *step_key* in declaration order."""
        return [e for e in self.edges if e.source == step_key]

    def incoming_edges(self, step_key: str) -> list[Edge]:
        """Return edges targeting *step_key* in declaration order."""
        return [e for e in self.edges if e.target == step_key]

    def roots(self) -> list[str]:
        """Return keys of steps with no incoming edges."""
        targets = {e.target for e in self.edges}
        return [key for key in self.steps if key not in targets]

    def reachable_from(self, step_key: str) -> list[str]:
        """Return *step_key* and every step downstream of it, in declaration order."""
        seen = {step_key}
        stack = [step_key]
        while stack:
            for edge in self.outgoing_edges(stack.pop()):
                if edge.target not in seen:
                    seen.add(edge.target)
                    stack.append(edge.target)
        return [key for key in self.steps if key in seen]

    def subgraph(self, step_key: str) -> Pipeline:
        """Return the part of the graph reachable from *step_key*.

        Edges from steps outside the subgraph are dropped, so *step_key*
        becomes its only root.
        """
        keys = set(self.reachable_from(step_key))
        return Pipeline(
            name=self.name,
            steps={k: s for k, s in self.steps.items() if k in keys},
            edges=[e for e in self.edges if e.source in keys and e.target in keys],
            hooks=self.hooks,
            timeout=self.timeout,
            metadata=dict(self.metadata),
        )


@dataclass
class StepResult:
    """Counters and output reported by a step executor.

    Attributes:
        ok: Number of records processed successfully.
        fail: Number of records that failed.
        records: Output batch forwarded to successors.
        branches: Named output batches for ROUTE steps.
        paused: Set by gate steps that are awaiting approval.
    """

    ok: int = 0
    fail: int = 0
    records: list[Record] = field(default_factory=list)
    branches: dict[str, list[Record]] | None = None
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "fail": self.fail, "paused": self.paused}


@dataclass
class RecordError:
    """A record that a step could not process.

    Attributes:
        step_key: Step that rejected the record.
        message: Human-readable failure reason.
        record: The (possibly partial) record payload.
        stack: Optional formatted traceback.
        timestamp: UNIX epoch when the error was reported.
    """

    step_key: str
    message: str
    record: Record | None = None
    stack: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_key": self.step_key,
            "message": self.message,
            "record": self.record,
            "stack": self.stack,
            "timestamp": self.timestamp,
        }


# on_record_error(step_key, message, record, stack=None)
RecordErrorCallback = Callable[..., None]


@dataclass
class Run:
    """One execution of a pipeline definition.

    Attributes:
        id: Unique run identifier.
        pipeline: The definition being executed.
        status: Current lifecycle status.
        seed: Seed batch handed to root steps.
        errors: Per-record errors collected for dead-letter review.
        step_results: Latest :class:`StepResult` per step key.
        failed_step: Key of the step that caused a FAILED/TIMEOUT run.
        error: Run-level error message.
        cancel_requested: Cooperative cancellation flag, checked
            between steps.
        started_at: UNIX epoch when the run started.
        finished_at: UNIX epoch when the run reached a terminal status.
        replay_of: Run whose records this run replays.
    """

    id: str
    pipeline: Pipeline
    status: RunStatus = RunStatus.PENDING
    seed: list[Record] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    step_results: dict[str, StepResult] = field(default_factory=dict)
    failed_step: str | None = None
    error: str | None = None
    cancel_requested: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    replay_of: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize run state to a JSON-compatible dict."""
        return {
            "id": self.id,
            "pipeline": self.pipeline.name,
            "status": self.status.value,
            "failed_step": self.failed_step,
            "error": self.error,
            "error_count": len(self.errors),
            "steps": {k: r.to_dict() for k, r in self.step_results.items()},
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "replay_of": self.replay_of,
        }


def freeze_batch(records: list[Record]) -> tuple[Mapping[str, Any], ...]:
    """Return a read-only view of *records* for observation-only consumers."""
    return tuple(MappingProxyType(copy.deepcopy(dict(r))) for r in records)
