"""Run registry and lifecycle operations.

:class:`PipelineService` owns the runs of a process.  It starts runs as
asyncio tasks, records their events, resumes them from the checkpoint
store, and is the single entry point for gate approval and rejection,
cancellation, step replays and the TIMEOUT-gate sweep.  Gate and resume
operations on one run are serialized by a per-run lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Callable

import httpx

from datahub.pipeline.adapters import create_default_registry
from datahub.pipeline.checkpoint import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    RunCheckpoint,
)
from datahub.pipeline.engine import PipelineEngine
from datahub.pipeline.errors import EngineError, GateNotFoundError, RunNotFoundError
from datahub.pipeline.events import PipelineEvent, PipelineEventEmitter, PipelineEventType
from datahub.pipeline.gates import (
    GateNotifier,
    GateTimeoutSweeper,
    PendingGateTimeout,
    to_iso,
)
from datahub.pipeline.hooks import HookContext, HookRunner
from datahub.pipeline.models import Pipeline, Record, Run, RunStatus
from datahub.pipeline.registry import AdapterRegistry
from datahub.pipeline.resilience import CircuitBreakerRegistry
from datahub.pipeline.settings import EngineSettings
from datahub.pipeline.validator import ValidationError, validate_pipeline

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_RUN = 1000

# Statuses a restored run may be resumed from.  RUNNING and PENDING mean
# the process that owned the run stopped mid-execution.
RESUMABLE_STATUSES = frozenset({RunStatus.PAUSED, RunStatus.RUNNING, RunStatus.PENDING})


class PipelineService:
    """Starts, tracks and steers pipeline runs.

    Args:
        store: Checkpoint store shared with the engine.
        event_emitter: Emitter for engine and service events.
        registry: Adapter registry.
        hooks: Hook runner; its pipeline trigger is wired to this service.
        sweep_interval: Seconds between TIMEOUT-gate sweeps.
        clock: Wall clock.
        **engine_options: Forwarded to :class:`PipelineEngine`.
    """

    def __init__(
        self,
        store: CheckpointStore | None = None,
        event_emitter: PipelineEventEmitter | None = None,
        registry: AdapterRegistry | None = None,
        hooks: HookRunner | None = None,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
        **engine_options: Any,
    ) -> None:
        self.store: CheckpointStore = store or InMemoryCheckpointStore()
        self.events = event_emitter or PipelineEventEmitter()
        self.hooks = hooks or HookRunner(
            event_emitter=self.events,
            allow_private_urls=engine_options.get("allow_private_urls", False),
        )
        self.hooks.set_trigger(self._trigger_pipeline)
        self.engine = PipelineEngine(
            registry=registry,
            hooks=self.hooks,
            checkpoint_store=self.store,
            event_emitter=self.events,
            clock=clock,
            **engine_options,
        )
        self._clock = clock
        self._runs: dict[str, Run] = {}
        self._tasks: dict[str, asyncio.Task[Run]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pipelines: dict[str, Pipeline] = {}
        self._event_log: dict[str, deque[dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=MAX_EVENTS_PER_RUN)
        )
        self.events.on_any(self._record_event)
        self.sweeper = GateTimeoutSweeper(
            pending=self._pending_gate_timeouts,
            approve=self._approve_expired,
            emit=self.events.emit,
            interval=sweep_interval,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        http: httpx.AsyncClient | None = None,
        **overrides: Any,
    ) -> PipelineService:
        """Build a service from :class:`EngineSettings`."""
        store: CheckpointStore = (
            FileCheckpointStore(settings.checkpoint_dir)
            if settings.checkpoint_dir
            else InMemoryCheckpointStore()
        )
        options: dict[str, Any] = {
            "store": store,
            "registry": create_default_registry(http_timeout=settings.http_timeout),
            "sweep_interval": settings.sweep_interval,
            "breakers": CircuitBreakerRegistry(
                failure_threshold=settings.circuit_failure_threshold,
                reset_timeout=settings.circuit_reset_timeout,
            ),
            "default_retry": settings.retry_policy(),
            "batch_size": settings.batch_size,
            "gate_notifier": GateNotifier(
                http=http,
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_from=settings.smtp_from,
                timeout=settings.http_timeout,
                allow_private_urls=settings.allow_private_urls,
            ),
            "http": http,
            "allow_private_urls": settings.allow_private_urls,
        }
        options.update(overrides)
        return cls(**options)

    # -- registry -----------------------------------------------------------

    def register_pipeline(self, pipeline: Pipeline) -> None:
        """Make *pipeline* startable by name (and by TriggerPipeline hooks)."""
        self._pipelines[pipeline.name] = pipeline

    def get_pipeline(self, name: str) -> Pipeline | None:
        return self._pipelines.get(name)

    def validate(self, pipeline: Pipeline) -> list[ValidationError]:
        """Validate *pipeline* against this service's adapters and scripts."""
        return validate_pipeline(pipeline, self.engine.registry, self.hooks.scripts)

    def get_run(self, run_id: str) -> Run:
        """Return the run registered under *run_id*.

        Raises:
            RunNotFoundError: If no such run exists.
        """
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run '{run_id}' not found")
        return run

    def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        return [r for r in self._runs.values() if status is None or r.status == status]

    def events_for(self, run_id: str) -> list[dict[str, Any]]:
        self.get_run(run_id)
        return list(self._event_log.get(run_id, ()))

    async def _record_event(self, event: PipelineEvent) -> None:
        if event.run_id:
            self._event_log[event.run_id].append(event.to_dict())

    # -- execution ----------------------------------------------------------

    async def start_run(
        self,
        pipeline: Pipeline | str,
        records: list[Record] | None = None,
        *,
        run_id: str | None = None,
        wait: bool = False,
    ) -> Run:
        """Start a run of *pipeline* seeded with *records*.

        Args:
            pipeline: Definition, or the name of a registered one.
            records: Seed batch for the root steps.
            run_id: Explicit identifier; generated when omitted.
            wait: Return only once the run stops (completed, paused,
                failed, ...).

        Raises:
            EngineError: If *pipeline* names an unregistered pipeline.
        """
        if isinstance(pipeline, str):
            definition = self._pipelines.get(pipeline)
            if definition is None:
                raise EngineError(f"Pipeline '{pipeline}' is not registered")
            pipeline = definition
        run = Run(id=run_id or uuid.uuid4().hex, pipeline=pipeline, seed=list(records or []))
        self._runs[run.id] = run
        task = self._launch(run, None)
        if wait:
            await task
        return run

    def _launch(self, run: Run, checkpoint: RunCheckpoint | None) -> asyncio.Task[Run]:
        task = asyncio.create_task(self._execute(run, checkpoint))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._forget_task(run_id, _t))
        return task

    def _forget_task(self, run_id: str, task: asyncio.Task[Run]) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]

    async def _execute(self, run: Run, checkpoint: RunCheckpoint | None) -> Run:
        try:
            return await self.engine.run(run, checkpoint)
        except Exception as exc:
            logger.exception("Run %s crashed", run.id)
            run.status = RunStatus.FAILED
            run.error = str(exc)
            run.finished_at = self._clock()
            return run

    async def wait(self, run_id: str) -> Run:
        """Wait for the run's current execution to stop."""
        run = self.get_run(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return run

    async def _settle(self, run_id: str) -> None:
        # The engine rewrites the whole checkpoint on every step, so gate
        # updates wait for the current execution to stop.
        task = self._tasks.get(run_id)
        if task is not None and task is not asyncio.current_task():
            await task

    async def _load_checkpoint(self, run_id: str) -> RunCheckpoint:
        return RunCheckpoint.from_dict(await self.store.load(run_id))

    async def restore_run(self, run_id: str, pipeline: Pipeline) -> Run:
        """Re-register a run persisted by another process.

        Raises:
            RunNotFoundError: If the store has no checkpoint for *run_id*.
        """
        if run_id in self._runs:
            return self._runs[run_id]
        data = await self.store.load(run_id)
        if not data:
            raise RunNotFoundError(f"No checkpoint for run '{run_id}'")
        meta = RunCheckpoint.from_dict(data).engine.run
        run = Run(
            id=run_id,
            pipeline=pipeline,
            status=RunStatus(meta.get("status", RunStatus.PAUSED.value)),
            failed_step=meta.get("failedStep"),
            error=meta.get("error"),
            started_at=meta.get("startedAt"),
        )
        self._runs[run_id] = run
        return run

    def _is_live(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def resume_run(self, run_id: str, *, wait: bool = False) -> Run:
        """Continue a run from its checkpoint.

        PAUSED runs resume after gate approval.  A restored run still
        marked RUNNING or PENDING (its process stopped mid-run) resumes
        after the last completed step.

        Raises:
            RunNotFoundError: If the run is unknown.
            EngineError: If the run is terminal or already executing.
        """
        run = self.get_run(run_id)
        async with self._locks[run_id]:
            task = await self._resume_locked(run)
        if wait:
            await task
        return run

    async def _resume_locked(
        self, run: Run, checkpoint: RunCheckpoint | None = None
    ) -> asyncio.Task[Run]:
        # Caller holds the run's lock.
        if self._is_live(run.id):
            raise EngineError(f"Run '{run.id}' is already running")
        if run.status not in RESUMABLE_STATUSES:
            raise EngineError(f"Run '{run.id}' is {run.status.value}, not PAUSED")
        previous = run.status
        run.status = RunStatus.RUNNING
        try:
            if checkpoint is None:
                checkpoint = await self._load_checkpoint(run.id)
        except Exception:
            run.status = previous
            raise
        if previous != RunStatus.PAUSED:
            logger.warning("Run %s was %s; resuming after a restart", run.id, previous.value)
        return self._launch(run, checkpoint)

    async def replay_from_step(
        self,
        run_id: str,
        step_key: str,
        records: list[Record] | None = None,
        *,
        wait: bool = False,
    ) -> Run:
        """Re-run *step_key* and everything downstream of it as a new run.

        Without *records*, the records that failed at *step_key* in the
        original run are replayed.  The new run's ``replay_of`` points at
        *run_id*.

        Raises:
            RunNotFoundError: If the run is unknown.
            EngineError: If the step does not exist or there is nothing
                to replay.
        """
        original = self.get_run(run_id)
        pipeline = original.pipeline
        if step_key not in pipeline.steps:
            raise EngineError(f"Pipeline '{pipeline.name}' has no step '{step_key}'")
        if records is None:
            records = [
                dict(e.record)
                for e in original.errors
                if e.step_key == step_key and e.record is not None
            ]
        if not records:
            raise EngineError(f"Run '{run_id}' has no records to replay at step '{step_key}'")

        replay = Run(
            id=uuid.uuid4().hex,
            pipeline=pipeline.subgraph(step_key),
            seed=list(records),
            replay_of=run_id,
        )
        self._runs[replay.id] = replay
        logger.info(
            "Replaying %d record(s) of run %s from step '%s' as run %s",
            len(records),
            run_id,
            step_key,
            replay.id,
        )
        await self.events.emit(PipelineEvent(
            type=PipelineEventType.RUN_REPLAYED,
            run_id=run_id,
            step_key=step_key,
            pipeline_name=pipeline.name,
            data={"childRunId": replay.id, "recordCount": len(records)},
        ))
        task = self._launch(replay, None)
        if wait:
            await task
        return replay

    # -- gates --------------------------------------------------------------

    async def pending_gates(self, run_id: str) -> dict[str, dict[str, Any]]:
        """Return the gate snapshots of *run_id* still awaiting approval.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        self.get_run(run_id)
        state = (await self._load_checkpoint(run_id)).engine
        return {
            key: snapshot
            for key, snapshot in state.gates.items()
            if key not in state.gate_approvals
        }

    async def approve_gate(
        self, run_id: str, step_key: str, *, resume: bool = True, wait: bool = False
    ) -> Run:
        """Approve the pending gate *step_key* of a paused run.

        Approving a gate that is already approved (or already passed) is
        a no-op.

        Args:
            run_id: The paused run.
            step_key: Key of the GATE step.
            resume: Resume the run after recording the approval.
            wait: With *resume*, return once the resumed run stops.

        Raises:
            RunNotFoundError: If the run is unknown.
            GateNotFoundError: If the run has no such gate.
        """
        run = self.get_run(run_id)
        task: asyncio.Task[Run] | None = None
        async with self._locks[run_id]:
            await self._settle(run_id)
            checkpoint = await self._load_checkpoint(run_id)
            state = checkpoint.engine

            if step_key in state.gate_approvals or (
                step_key in state.completed and step_key not in state.gates
            ):
                logger.debug("Gate '%s' of run %s is already approved", step_key, run_id)
                return run
            if step_key not in state.gates:
                raise GateNotFoundError(f"Run '{run_id}' has no pending gate '{step_key}'")

            state.gate_approvals[step_key] = {
                "stepKey": step_key,
                "approvedAt": to_iso(self._clock()),
            }
            await self.store.save(run_id, checkpoint.to_dict())
            logger.info("Gate '%s' of run %s approved", step_key, run_id)
            await self.events.emit(PipelineEvent(
                type=PipelineEventType.GATE_APPROVED,
                run_id=run_id,
                step_key=step_key,
                pipeline_name=run.pipeline.name,
            ))

            if resume and run.status == RunStatus.PAUSED and not self._is_live(run_id):
                task = await self._resume_locked(run, checkpoint)
        if wait and task is not None:
            await task
        return run

    async def reject_gate(self, run_id: str, step_key: str) -> Run:
        """Reject a pending gate; the run ends CANCELLED.

        Raises:
            RunNotFoundError: If the run is unknown.
            GateNotFoundError: If the run has no such pending gate.
        """
        run = self.get_run(run_id)
        async with self._locks[run_id]:
            await self._settle(run_id)
            checkpoint = await self._load_checkpoint(run_id)
            state = checkpoint.engine
            if step_key not in state.gates:
                raise GateNotFoundError(f"Run '{run_id}' has no pending gate '{step_key}'")

            state.gates.pop(step_key)
            state.gate_timeouts.pop(step_key, None)
            state.gate_approvals.pop(step_key, None)
            run.status = RunStatus.CANCELLED
            run.error = f"Gate '{step_key}' rejected"
            run.finished_at = self._clock()
            state.run.update({"status": run.status.value, "error": run.error})
            await self.store.save(run_id, checkpoint.to_dict())
        logger.info("Gate '%s' of run %s rejected", step_key, run_id)

        for event_type in (PipelineEventType.GATE_REJECTED, PipelineEventType.RUN_CANCELLED):
            await self.events.emit(PipelineEvent(
                type=event_type,
                run_id=run_id,
                step_key=step_key,
                pipeline_name=run.pipeline.name,
            ))
        return run

    async def cancel_run(self, run_id: str) -> Run:
        """Request cancellation.

        A running run stops before its next step; a paused run is
        cancelled at once.  Terminal runs are left unchanged.
        """
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return run
        run.cancel_requested = True
        if run.status in (RunStatus.PAUSED, RunStatus.PENDING) and not self._is_live(run_id):
            run.status = RunStatus.CANCELLED
            run.finished_at = self._clock()
            checkpoint = await self._load_checkpoint(run_id)
            checkpoint.engine.run.update({"status": run.status.value})
            await self.store.save(run_id, checkpoint.to_dict())
            await self.events.emit(PipelineEvent(
                type=PipelineEventType.RUN_CANCELLED,
                run_id=run_id,
                pipeline_name=run.pipeline.name,
            ))
        logger.info("Cancellation requested for run %s", run_id)
        return run

    # -- timeout sweep ------------------------------------------------------

    async def _pending_gate_timeouts(self) -> list[PendingGateTimeout]:
        pending: list[PendingGateTimeout] = []
        for run in self.list_runs(RunStatus.PAUSED):
            checkpoint = await self._load_checkpoint(run.id)
            for step_key, entry in checkpoint.engine.gate_timeouts.items():
                pending.append(PendingGateTimeout(
                    run_id=run.id,
                    pipeline_name=run.pipeline.name,
                    step_key=step_key,
                    expires_at=entry.get("expiresAt"),
                    created_at=entry.get("createdAt"),
                ))
        return pending

    async def _approve_expired(self, run_id: str, step_key: str) -> None:
        await self.approve_gate(run_id, step_key)

    async def sweep_gate_timeouts(self) -> list[tuple[str, str]]:
        """Run one TIMEOUT-gate sweep now."""
        return await self.sweeper.sweep_once()

    def start(self) -> None:
        """Start background work (the timeout sweep)."""
        self.sweeper.start()

    async def close(self) -> None:
        """Stop the sweep and wait for in-flight runs."""
        await self.sweeper.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # -- hooks --------------------------------------------------------------

    async def _trigger_pipeline(
        self, name: str, records: list[Record], context: HookContext
    ) -> None:
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            logger.warning(
                "Run %s tried to trigger unknown pipeline '%s'", context.run_id, name
            )
            return
        child = await self.start_run(pipeline, records)
        logger.info("Run %s triggered pipeline '%s' as run %s", context.run_id, name, child.id)
        await self.events.emit(PipelineEvent(
            type=PipelineEventType.PIPELINE_TRIGGERED,
            run_id=context.run_id,
            step_key=context.step_key,
            pipeline_name=context.pipeline_name,
            data={"pipeline": name, "childRunId": child.id, "stage": context.stage.value},
        ))
