"""Gate review front-ends.

A paused gate is presented to a :class:`GateReviewer` as a
:class:`GateReview`; the reviewer answers with a :class:`GateDecision`.

- :class:`CLIReviewer`: interactive terminal review using ``rich``.
- :class:`QueueReviewer`: programmatic, for tests and automation.
- :class:`AutoApproveReviewer`: approves everything, for CI.

:func:`review_pending` walks the pending gates of a run and applies each
decision through :class:`PipelineService`.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from datahub.pipeline.gates import DEFAULT_PREVIEW_COUNT
from datahub.pipeline.models import Record, Run
from datahub.pipeline.service import PipelineService

logger = logging.getLogger(__name__)


class GateDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DEFER = "defer"


@dataclass
class GateReview:
    """A paused gate awaiting a decision.

    Attributes:
        run_id: The paused run.
        pipeline_name: Name of the run's pipeline.
        step_key: Key of the GATE step.
        approval_type: ``MANUAL``, ``THRESHOLD`` or ``TIMEOUT``.
        record_count: Number of records held at the gate.
        preview: The first records of the held batch.
        paused_at: ISO-8601 time the gate paused.
    """

    run_id: str
    pipeline_name: str
    step_key: str
    approval_type: str
    record_count: int
    preview: list[Record] = field(default_factory=list)
    paused_at: str | None = None

    @classmethod
    def from_snapshot(
        cls,
        run: Run,
        snapshot: dict[str, Any],
        preview_count: int = DEFAULT_PREVIEW_COUNT,
    ) -> GateReview:
        records = snapshot.get("pendingRecords") or []
        return cls(
            run_id=run.id,
            pipeline_name=run.pipeline.name,
            step_key=snapshot["stepKey"],
            approval_type=snapshot.get("approvalType", "MANUAL"),
            record_count=snapshot.get("pendingRecordCount", len(records)),
            preview=list(records[:preview_count]),
            paused_at=snapshot.get("pausedAt"),
        )


@runtime_checkable
class GateReviewer(Protocol):
    """Protocol for deciding on paused gates."""

    async def review(self, review: GateReview) -> GateDecision: ...


class CLIReviewer:
    """Interactive reviewer using ``rich`` for terminal formatting."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    async def review(self, review: GateReview) -> GateDecision:
        """Show the held batch and prompt for a decision."""
        self._console.print(
            Panel(
                f"Run [bold]{review.run_id}[/bold] of [bold]{review.pipeline_name}[/bold]\n"
                f"{review.approval_type} gate holding {review.record_count} record(s)"
                + (f" since {review.paused_at}" if review.paused_at else ""),
                title=escape(f"Gate [{review.step_key}]"),
                border_style="yellow",
            )
        )
        if review.preview:
            self._console.print(_preview_table(review.preview))
        choice = await asyncio.to_thread(
            Prompt.ask,
            "Decision",
            choices=[d.value for d in GateDecision],
            default=GateDecision.DEFER.value,
            console=self._console,
        )
        return GateDecision(choice)


def _preview_table(records: list[Record]) -> Table:
    columns: list[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    table = Table(show_lines=False)
    for column in columns:
        table.add_column(column)
    for record in records:
        table.add_row(*(escape(_cell(record.get(c))) for c in columns))
    return table


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class QueueReviewer:
    """Programmatic reviewer fed by an asyncio Queue.

    Push :class:`GateDecision` values into ``decisions`` before review.
    Every review received is kept in ``reviews``.
    """

    def __init__(self) -> None:
        self.decisions: asyncio.Queue[GateDecision] = asyncio.Queue()
        self.reviews: list[GateReview] = []

    async def review(self, review: GateReview) -> GateDecision:
        self.reviews.append(review)
        return await self.decisions.get()


class AutoApproveReviewer:
    """Reviewer that approves every gate."""

    async def review(self, review: GateReview) -> GateDecision:
        logger.debug("Auto-approving gate '%s' of run %s", review.step_key, review.run_id)
        return GateDecision.APPROVE


async def review_pending(
    service: PipelineService,
    run_id: str,
    reviewer: GateReviewer,
    *,
    wait: bool = True,
) -> dict[str, GateDecision]:
    """Ask *reviewer* about every pending gate of *run_id* and apply the answers.

    Approvals are recorded without resuming; the run resumes once after
    all gates are reviewed, unless a gate was rejected.

    Args:
        service: Service owning the run.
        run_id: A PAUSED run.
        reviewer: Source of decisions.
        wait: Wait for the resumed run to stop.

    Returns:
        Decision per gate step key.

    Raises:
        RunNotFoundError: If the run is unknown.
    """
    run = service.get_run(run_id)
    decisions: dict[str, GateDecision] = {}
    for step_key, snapshot in (await service.pending_gates(run_id)).items():
        decision = await reviewer.review(GateReview.from_snapshot(run, snapshot))
        decisions[step_key] = decision
        if decision == GateDecision.REJECT:
            await service.reject_gate(run_id, step_key)
            return decisions
        if decision == GateDecision.APPROVE:
            await service.approve_gate(run_id, step_key, resume=False)

    if GateDecision.APPROVE in decisions.values():
        await service.resume_run(run_id, wait=wait)
    return decisions
