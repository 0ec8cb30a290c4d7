"""Pipeline execution engine.

Walks a :class:`Pipeline` graph in topological order, hands each step's
input to the executor registered for its kind, forwards the output along
every outgoing edge, and checkpoints after every completed step.

Fan-in is a barrier: a step runs once every predecessor has produced
output, and its input is the concatenation of those outputs in edge
declaration order.  Root steps receive the run's seed batch.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import traceback
from collections import deque
from typing import Any, Awaitable, Callable

import httpx

from datahub.pipeline.adapters import create_default_registry
from datahub.pipeline.checkpoint import CheckpointStore, RunCheckpoint
from datahub.pipeline.errors import EngineError, StepFailedError, StepTimeoutError
from datahub.pipeline.events import PipelineEvent, PipelineEventEmitter, PipelineEventType
from datahub.pipeline.executors import (
    DEFAULT_BATCH_SIZE,
    ExecutionContext,
    StepExecutor,
    create_default_executors,
)
from datahub.pipeline.gates import GateExecutor, GateNotifier
from datahub.pipeline.hooks import (
    HookAction,
    HookContext,
    HookRunner,
    HookStage,
    compile_hooks,
    step_stages,
)
from datahub.pipeline.models import (
    Pipeline,
    Record,
    RecordError,
    Run,
    RunStatus,
    Step,
    StepKind,
    StepResult,
)
from datahub.pipeline.registry import AdapterRegistry, SecretResolver
from datahub.pipeline.resilience import CircuitBreakerRegistry, RetryPolicy

logger = logging.getLogger(__name__)


def topological_order(pipeline: Pipeline) -> list[str]:
    """Return step keys in Kahn order, ties broken by declaration order.

    Raises:
        EngineError: If the graph has a cycle or an edge names an
            unknown step.
    """
    indegree = {key: 0 for key in pipeline.steps}
    successors: dict[str, list[str]] = {key: [] for key in pipeline.steps}
    for edge in pipeline.edges:
        if edge.source not in indegree or edge.target not in indegree:
            raise EngineError(
                f"Edge {edge.source} -> {edge.target} references an unknown step"
            )
        successors[edge.source].append(edge.target)
        indegree[edge.target] += 1

    queue: deque[str] = deque(k for k, d in indegree.items() if d == 0)
    order: list[str] = []
    while queue:
        key = queue.popleft()
        order.append(key)
        for target in successors[key]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    if len(order) != len(pipeline.steps):
        stuck = sorted(k for k, d in indegree.items() if d > 0)
        raise EngineError(f"Pipeline '{pipeline.name}' has a cycle through: {', '.join(stuck)}")
    return order


class _RunAborted(Exception):
    """Internal signal that the run reached a terminal status mid-walk."""


class PipelineEngine:
    """DAG scheduler for a single run at a time.

    Steps execute one after another inside the calling task.  Each step:

    1. Assembles its input from the seed or its predecessors' outputs.
    2. Runs the ``before`` hooks for its kind.
    3. Dispatches to the executor registered for its kind.
    4. Runs the ``after`` hooks.
    5. Updates pipeline stats and persists the checkpoint.

    Args:
        registry: Adapter registry.
        executors: Executor per step kind; defaults cover every kind.
        hooks: Hook runner for lifecycle stages.
        checkpoint_store: Persists checkpoints; nothing is persisted when
            omitted.
        event_emitter: Receives engine events.
        breakers: Circuit breakers shared across runs.
        default_retry: Retry policy for steps without their own.
        batch_size: Chunk size for delivery steps without their own.
        gate_notifier: Sends gate pause notifications.
        secrets: Secret resolver handed to adapters.
        connections: Named connection configs handed to adapters.
        http: Shared HTTP client for network adapters.
        allow_private_urls: Disable SSRF address checks.
        dry_run: Ask adapters not to write to external systems.
        sleep: Sleep used between retries.
        clock: Wall clock for run timestamps and gate expiry.
    """

    def __init__(
        self,
        registry: AdapterRegistry | None = None,
        executors: dict[StepKind, StepExecutor] | None = None,
        hooks: HookRunner | None = None,
        checkpoint_store: CheckpointStore | None = None,
        event_emitter: PipelineEventEmitter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        default_retry: RetryPolicy | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        gate_notifier: GateNotifier | None = None,
        secrets: SecretResolver | None = None,
        connections: dict[str, dict[str, Any]] | None = None,
        http: httpx.AsyncClient | None = None,
        allow_private_urls: bool = False,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry or create_default_registry()
        self._executors: dict[StepKind, StepExecutor] = dict(executors or create_default_executors())
        self._executors.setdefault(StepKind.GATE, GateExecutor(gate_notifier, clock=clock))
        self.hooks = hooks or HookRunner(event_emitter=event_emitter)
        self._store = checkpoint_store
        self._event_emitter = event_emitter
        self.breakers = breakers or CircuitBreakerRegistry()
        self._default_retry = default_retry or RetryPolicy()
        self._batch_size = batch_size
        self._secrets = secrets or SecretResolver()
        self._connections = connections or {}
        self._http = http
        self._allow_private_urls = allow_private_urls
        self._dry_run = dry_run
        self._sleep = sleep
        self._clock = clock

    async def _emit(self, event: PipelineEvent) -> None:
        """Emit a pipeline event if an emitter is configured."""
        if self._event_emitter is not None:
            await self._event_emitter.emit(event)

    async def _emit_run(
        self, run: Run, event_type: PipelineEventType, step_key: str = "", **data: Any
    ) -> None:
        await self._emit(PipelineEvent(
            type=event_type,
            run_id=run.id,
            step_key=step_key,
            pipeline_name=run.pipeline.name,
            data=data,
        ))

    async def run(self, run: Run, checkpoint: RunCheckpoint | None = None) -> Run:
        """Execute *run* until it completes, pauses or fails.

        Args:
            run: The run to execute; its status and results are updated
                in place.
            checkpoint: State to resume from.  A fresh checkpoint starts
                the run from its root steps.

        Returns:
            The same :class:`Run`.

        Raises:
            EngineError: If the graph cannot be ordered.
        """
        pipeline = run.pipeline
        order = topological_order(pipeline)
        cp = checkpoint or RunCheckpoint()
        resumed = bool(cp.engine.completed or cp.engine.gates or cp.engine.gate_approvals)

        run.status = RunStatus.RUNNING
        run.error = None
        run.failed_step = None
        if run.started_at is None:
            run.started_at = self._clock()

        if resumed:
            logger.info("Resuming run %s of pipeline '%s'", run.id, pipeline.name)
            await self._emit_run(run, PipelineEventType.RUN_RESUMED, completed=list(cp.engine.completed))
        else:
            logger.info("Starting run %s of pipeline '%s'", run.id, pipeline.name)
            await self._emit_run(run, PipelineEventType.RUN_STARTED, seedCount=len(run.seed))

        try:
            stage_hooks = compile_hooks(pipeline.hooks, self.hooks.scripts)
        except ValueError as exc:
            await self._finish_failed(run, cp, f"Invalid hook configuration: {exc}", {})
            return run

        walk = self._walk(run, cp, order, stage_hooks, resumed)
        try:
            if pipeline.timeout is not None:
                await asyncio.wait_for(walk, timeout=pipeline.timeout)
            else:
                await walk
        except asyncio.TimeoutError:
            run.status = RunStatus.TIMEOUT
            run.error = f"Pipeline timed out after {pipeline.timeout}s"
            logger.error("Run %s: %s", run.id, run.error)
            await self._finish(run, cp, PipelineEventType.RUN_TIMEOUT, error=run.error)
        except _RunAborted:
            pass
        return run

    async def _walk(
        self,
        run: Run,
        cp: RunCheckpoint,
        order: list[str],
        stage_hooks: dict[HookStage, list[HookAction]],
        resumed: bool,
    ) -> None:
        pipeline = run.pipeline
        state = cp.engine
        context = self._execution_context(run, cp, stage_hooks)

        seed = list(run.seed)
        if not resumed:
            try:
                seed = await self._run_hooks(run, stage_hooks, HookStage.PIPELINE_STARTED, seed)
            except Exception as exc:
                await self._finish_failed(run, cp, str(exc), stage_hooks)
                raise _RunAborted() from exc

        halted: set[str] = set()
        paused: list[str] = []
        for key in order:
            if run.cancel_requested:
                run.status = RunStatus.CANCELLED
                logger.info("Run %s cancelled before step '%s'", run.id, key)
                await self._finish(run, cp, PipelineEventType.RUN_CANCELLED)
                raise _RunAborted()

            if key in state.completed:
                continue
            step = pipeline.steps[key]
            incoming = pipeline.incoming_edges(key)
            if any(e.source in halted for e in incoming):
                halted.add(key)
                continue

            records = self._assemble_input(run, cp, key, seed)
            try:
                result = await self._run_step(context, run, step, records, stage_hooks)
            except StepTimeoutError as exc:
                run.status = RunStatus.TIMEOUT
                run.failed_step = key
                run.error = str(exc)
                await self._emit_run(run, PipelineEventType.STEP_FAILED, key, error=run.error)
                await self._finish(run, cp, PipelineEventType.RUN_TIMEOUT, error=run.error)
                raise _RunAborted() from exc
            except Exception as exc:
                await self._emit_run(run, PipelineEventType.STEP_FAILED, key, error=str(exc))
                if not step.tolerate_errors:
                    run.failed_step = key
                    await self._finish_failed(run, cp, f"Step '{key}' failed: {exc}", stage_hooks)
                    raise _RunAborted() from exc
                logger.warning(
                    "Step '%s' raised %s; continuing with no output", key, exc
                )
                result = StepResult()

            if result.paused:
                halted.add(key)
                paused.append(key)
                await self._persist(run, cp)
                continue

            run.step_results[key] = result
            if step.kind != StepKind.GATE:
                state.record_stats(result.ok, result.fail)

            if step.strict and result.fail > 0:
                run.failed_step = key
                error = StepFailedError(
                    f"Strict step '{key}' reported {result.fail} failed record(s)",
                    step_key=key,
                )
                await self._finish_failed(run, cp, str(error), stage_hooks)
                raise _RunAborted()

            state.outputs[key] = {
                "records": result.records,
                "branches": result.branches,
            }
            state.completed.append(key)
            self._prune_outputs(pipeline, cp, key)
            await self._persist(run, cp)

        if paused:
            run.status = RunStatus.PAUSED
            logger.info("Run %s paused at gate(s): %s", run.id, ", ".join(paused))
            await self._persist(run, cp)
            await self._emit_run(run, PipelineEventType.RUN_PAUSED, gates=paused)
            return

        # Leaf outputs stay checkpointed until pipelineCompleted has run.
        leaf_keys = [k for k in state.completed if not pipeline.outgoing_edges(k)]
        leaves = [
            r
            for k in leaf_keys
            for r in (state.outputs.get(k) or {}).get("records", [])
        ]
        try:
            await self._run_hooks(run, stage_hooks, HookStage.PIPELINE_COMPLETED, leaves)
        except Exception as exc:
            await self._finish_failed(run, cp, str(exc), stage_hooks)
            raise _RunAborted() from exc
        for k in leaf_keys:
            state.outputs.pop(k, None)
        run.status = RunStatus.COMPLETED
        logger.info("Run %s completed", run.id)
        await self._finish(
            run,
            cp,
            PipelineEventType.RUN_COMPLETED,
            errorCount=len(run.errors),
            stats=dict(state.stats or {}),
        )

    def _execution_context(
        self,
        run: Run,
        cp: RunCheckpoint,
        stage_hooks: dict[HookStage, list[HookAction]],
    ) -> ExecutionContext:
        async def on_retry(step: Step, attempt: int, exc: Exception, delay: float) -> None:
            await self._emit_run(
                run, PipelineEventType.STEP_RETRY, step.key,
                attempt=attempt, delay=delay, error=str(exc),
            )
            try:
                await self._run_hooks(
                    run, stage_hooks, HookStage.ON_RETRY, [], step.key,
                    attempt=attempt, delay=delay, error=str(exc),
                )
            except Exception:
                logger.exception("onRetry hook failed for step '%s'", step.key)

        return ExecutionContext(
            run_id=run.id,
            pipeline=run.pipeline,
            checkpoint=cp,
            registry=self.registry,
            breakers=self.breakers,
            default_retry=self._default_retry,
            batch_size=self._batch_size,
            secrets=self._secrets,
            connections=self._connections,
            dry_run=self._dry_run,
            http=self._http,
            allow_private_urls=self._allow_private_urls,
            emit=self._emit,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    def _assemble_input(self, run: Run, cp: RunCheckpoint, key: str, seed: list[Record]) -> list[Record]:
        incoming = run.pipeline.incoming_edges(key)
        if not incoming:
            return copy.deepcopy(seed)
        records: list[Record] = []
        for edge in incoming:
            output = cp.engine.outputs.get(edge.source)
            if output is None:
                continue
            if edge.branch is not None:
                branch = (output.get("branches") or {}).get(edge.branch, [])
                records.extend(copy.deepcopy(branch))
            else:
                records.extend(copy.deepcopy(output.get("records", [])))
        return records

    @staticmethod
    def _prune_outputs(pipeline: Pipeline, cp: RunCheckpoint, key: str) -> None:
        done = set(cp.engine.completed)
        for edge in pipeline.incoming_edges(key):
            source = edge.source
            if source in cp.engine.outputs and all(
                e.target in done for e in pipeline.outgoing_edges(source)
            ):
                del cp.engine.outputs[source]

    async def _run_step(
        self,
        context: ExecutionContext,
        run: Run,
        step: Step,
        records: list[Record],
        stage_hooks: dict[HookStage, list[HookAction]],
    ) -> StepResult:
        executor = self._executors.get(step.kind)
        if executor is None:
            raise EngineError(f"No executor registered for step kind {step.kind.value}")

        logger.info("Executing step '%s' (%s %s)", step.key, step.kind.value, step.adapter or "-")
        await self._emit_run(
            run, PipelineEventType.STEP_STARTED, step.key,
            kind=step.kind.value, adapter=step.adapter, inputCount=len(records),
        )

        stages = step_stages(step.kind)
        if stages is not None:
            records = await self._run_hooks(run, stage_hooks, stages[0], records, step.key)

        step_errors: list[RecordError] = []

        def on_record_error(
            step_key: str,
            message: str,
            record: Record | None = None,
            stack: str | None = None,
        ) -> None:
            error = RecordError(
                step_key=step_key,
                message=message,
                record=copy.deepcopy(record) if record is not None else None,
                stack=stack,
            )
            step_errors.append(error)
            run.errors.append(error)

        started = time.monotonic()
        try:
            if step.timeout is not None:
                result = await asyncio.wait_for(
                    executor.execute(context, step, records, on_record_error),
                    timeout=step.timeout,
                )
            else:
                result = await executor.execute(context, step, records, on_record_error)
        except asyncio.TimeoutError:
            logger.error("Step '%s' timed out after %ss", step.key, step.timeout)
            raise StepTimeoutError(
                f"Step '{step.key}' timed out after {step.timeout}s", step_key=step.key
            ) from None
        except Exception as exc:
            logger.error("Step '%s' raised: %s", step.key, exc)
            await self._report_step_error(run, stage_hooks, step, records, exc)
            raise
        duration = time.monotonic() - started

        if result.paused:
            return result

        if step_errors:
            await self._report_record_errors(run, stage_hooks, step, step_errors)

        if stages is not None:
            result.records = await self._run_hooks(run, stage_hooks, stages[1], result.records, step.key)

        logger.info(
            "Step '%s' finished: ok=%d fail=%d (%.2fs)", step.key, result.ok, result.fail, duration
        )
        await self._emit_run(
            run, PipelineEventType.STEP_COMPLETED, step.key,
            ok=result.ok, fail=result.fail, duration=duration,
        )
        return result

    async def _report_record_errors(
        self,
        run: Run,
        stage_hooks: dict[HookStage, list[HookAction]],
        step: Step,
        errors: list[RecordError],
    ) -> None:
        for error in errors:
            await self._emit_run(
                run, PipelineEventType.RECORD_REJECTED, step.key, message=error.message
            )
        failed = [e.record for e in errors if e.record is not None]
        messages = [e.message for e in errors]
        try:
            await self._run_hooks(
                run, stage_hooks, HookStage.ON_ERROR, failed, step.key, errors=messages
            )
            await self._run_hooks(
                run, stage_hooks, HookStage.ON_DEAD_LETTER, failed, step.key, errors=messages
            )
        except Exception:
            logger.exception("Error hooks failed for step '%s'", step.key)

    async def _report_step_error(
        self,
        run: Run,
        stage_hooks: dict[HookStage, list[HookAction]],
        step: Step,
        records: list[Record],
        exc: Exception,
    ) -> None:
        try:
            await self._run_hooks(
                run, stage_hooks, HookStage.ON_ERROR, records, step.key,
                error=str(exc), stack=traceback.format_exc(),
            )
        except Exception:
            logger.exception("onError hook failed for step '%s'", step.key)

    async def _run_hooks(
        self,
        run: Run,
        stage_hooks: dict[HookStage, list[HookAction]],
        stage: HookStage,
        records: list[Record],
        step_key: str = "",
        **data: Any,
    ) -> list[Record]:
        actions = stage_hooks.get(stage)
        if not actions:
            return records
        context = HookContext(
            stage=stage,
            run_id=run.id,
            pipeline_name=run.pipeline.name,
            step_key=step_key,
            data=data,
        )
        return await self.hooks.run(actions, records, context)

    async def _persist(self, run: Run, cp: RunCheckpoint) -> None:
        cp.engine.run = {
            "status": run.status.value,
            "pipeline": run.pipeline.name,
            "failedStep": run.failed_step,
            "error": run.error,
            "startedAt": run.started_at,
        }
        if self._store is None:
            return
        await self._store.save(run.id, cp.to_dict())
        await self._emit_run(
            run, PipelineEventType.CHECKPOINT_SAVED, completed=len(cp.engine.completed)
        )

    async def _finish(
        self,
        run: Run,
        cp: RunCheckpoint,
        event_type: PipelineEventType,
        **data: Any,
    ) -> None:
        run.finished_at = self._clock()
        await self._persist(run, cp)
        await self._emit_run(
            run, event_type, run.failed_step or "",
            duration=run.finished_at - (run.started_at or run.finished_at), **data,
        )

    async def _finish_failed(
        self,
        run: Run,
        cp: RunCheckpoint,
        message: str,
        stage_hooks: dict[HookStage, list[HookAction]],
    ) -> None:
        run.status = RunStatus.FAILED
        run.error = message
        logger.error("Run %s failed: %s", run.id, message)
        try:
            await self._run_hooks(
                run, stage_hooks, HookStage.PIPELINE_FAILED, [], run.failed_step or "",
                error=message,
            )
        except Exception:
            logger.exception("pipelineFailed hook failed for run %s", run.id)
        await self._finish(run, cp, PipelineEventType.RUN_FAILED, error=message)
