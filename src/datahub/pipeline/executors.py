"""Step executors, one per step kind.

Every executor implements :class:`StepExecutor`::

    execute(context, step, records, on_record_error) -> StepResult

and resolves its adapter through the :class:`AdapterRegistry`.  The
``fail`` count of a result is the number of ``on_record_error`` calls
made while the step ran, so the counters and the dead-letter list can
never disagree.

Delivery kinds (LOAD, EXPORT, FEED, SINK) split their input into
chunks.  Each chunk runs through the retry policy; network adapters also
run behind a circuit breaker keyed by adapter code and target host.  A
chunk that exhausts its retries, or is rejected by an open circuit, is
reported record by record and the next chunk proceeds.  Record errors
are buffered per attempt and only the final attempt's are reported.

A delivery step may also carry a throughput config (rate limit and an
error-rate drain strategy, see :class:`ThroughputConfig`) and an
``idempotencyKeyField`` that drops duplicate records before delivery.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

import httpx

from datahub.pipeline.checkpoint import RunCheckpoint
from datahub.pipeline.conditions import get_field, remove_field, set_field
from datahub.pipeline.errors import CircuitOpenError
from datahub.pipeline.events import PipelineEvent, PipelineEventType
from datahub.pipeline.models import (
    Pipeline,
    Record,
    RecordErrorCallback,
    Step,
    StepKind,
    StepResult,
)
from datahub.pipeline.registry import (
    AdapterContext,
    AdapterRegistry,
    SecretResolver,
)
from datahub.pipeline.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    RetryPolicy,
    retry_async,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_PAUSE_INTERVAL = 1.0
MIN_PAUSE_INTERVAL = 0.1

DELIVERY_KINDS = frozenset({StepKind.LOAD, StepKind.EXPORT, StepKind.FEED, StepKind.SINK})

_ABSENT = object()

EmitFn = Callable[[PipelineEvent], Awaitable[None]]
RetryHook = Callable[[Step, int, Exception, float], Awaitable[None]]


@dataclass
class ExecutionContext:
    """Per-run services shared by every executor.

    Attributes:
        run_id: Current run identifier.
        pipeline: Definition being executed.
        checkpoint: Live run checkpoint.
        registry: Adapter registry.
        breakers: Process-wide circuit breakers.
        default_retry: Retry policy for steps without their own.
        batch_size: Chunk size for steps without their own.
        secrets: Secret resolver handed to adapters.
        connections: Named connection configs handed to adapters.
        dry_run: Forwarded to adapters.
        http: Shared HTTP client for network adapters.
        allow_private_urls: Disable SSRF address checks.
        emit: Event sink.
        on_retry: Called before each chunk retry sleep.
        sleep: Sleep used between retries.
    """

    run_id: str
    pipeline: Pipeline
    checkpoint: RunCheckpoint
    registry: AdapterRegistry
    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    default_retry: RetryPolicy = field(default_factory=RetryPolicy)
    batch_size: int = DEFAULT_BATCH_SIZE
    secrets: SecretResolver = field(default_factory=SecretResolver)
    connections: dict[str, dict[str, Any]] = field(default_factory=dict)
    dry_run: bool = False
    http: httpx.AsyncClient | None = None
    allow_private_urls: bool = False
    emit: EmitFn | None = None
    on_retry: RetryHook | None = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def adapter_context(self, step: Step) -> AdapterContext:
        return AdapterContext(
            run_id=self.run_id,
            step=step,
            checkpoint=self.checkpoint,
            secrets=self.secrets,
            connections=self.connections,
            dry_run=self.dry_run,
            http=self.http,
            allow_private_urls=self.allow_private_urls,
        )

    async def publish(self, event_type: PipelineEventType, step: Step, **data: Any) -> None:
        if self.emit is None:
            return
        await self.emit(PipelineEvent(
            type=event_type,
            run_id=self.run_id,
            step_key=step.key,
            pipeline_name=self.pipeline.name,
            data=data,
        ))


@runtime_checkable
class StepExecutor(Protocol):
    """Protocol that all step executors must satisfy."""

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult: ...


class _ErrorCounter:
    """Wraps a record-error callback and counts its invocations."""

    def __init__(self, callback: RecordErrorCallback) -> None:
        self._callback = callback
        self.count = 0

    def __call__(
        self,
        step_key: str,
        message: str,
        record: Record | None = None,
        stack: str | None = None,
    ) -> None:
        self.count += 1
        self._callback(step_key, message, record, stack)


def _copy_batch(records: list[Record]) -> list[Record]:
    return [copy.deepcopy(r) for r in records]


class PassThroughExecutor:
    """Forwards input unchanged (TRIGGER steps)."""

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        return StepResult(ok=len(records), records=list(records))


class BatchExecutor:
    """Runs the adapter once over the whole batch.

    Used for EXTRACT, TRANSFORM, ENRICH and VALIDATE.  The adapter
    returns the output batch (or a full :class:`StepResult`); records it
    rejected are the ones it reported.
    """

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        adapter = context.registry.get(step.kind, step.adapter)
        counter = _ErrorCounter(on_record_error)
        outcome = await adapter.run(
            context.adapter_context(step), step, _copy_batch(records), counter
        )
        if isinstance(outcome, StepResult):
            outcome.fail = max(outcome.fail, counter.count)
            return outcome
        output = list(outcome or [])
        return StepResult(ok=len(output), fail=counter.count, records=output)


class RouteExecutor:
    """Splits the batch into named branches.

    Successor edges with a ``branch`` receive that branch only; plain
    edges receive every routed record.
    """

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        adapter = context.registry.get(step.kind, step.adapter)
        counter = _ErrorCounter(on_record_error)
        outcome = await adapter.run(
            context.adapter_context(step), step, _copy_batch(records), counter
        )
        if isinstance(outcome, StepResult):
            outcome.fail = max(outcome.fail, counter.count)
            return outcome
        if isinstance(outcome, Mapping):
            branches = {str(name): list(batch) for name, batch in outcome.items()}
            routed = [r for batch in branches.values() for r in batch]
            return StepResult(
                ok=len(routed), fail=counter.count, records=routed, branches=branches
            )
        output = list(outcome or [])
        return StepResult(ok=len(output), fail=counter.count, records=output)


def _option(config: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = config.get(name)
        if value:
            return value
    return None


def project_record(
    record: Record,
    fields: list[str] | None = None,
    exclude_fields: list[str] | None = None,
    field_mapping: Mapping[str, str] | None = None,
) -> Record:
    """Project *record* for delivery.

    An inclusion list wins over an exclusion list; the rename map is
    applied last to whatever survived.  Paths may be dotted.
    """
    if fields:
        result: Record = {}
        for path in fields:
            value = get_field(record, path, _ABSENT)
            if value is not _ABSENT:
                set_field(result, path, copy.deepcopy(value))
    elif exclude_fields:
        result = copy.deepcopy(record)
        for path in exclude_fields:
            remove_field(result, path)
    else:
        result = copy.deepcopy(record)

    if field_mapping:
        renamed: list[tuple[str, Any]] = []
        for source, target in field_mapping.items():
            value = get_field(result, source, _ABSENT)
            if value is not _ABSENT:
                renamed.append((target, value))
                remove_field(result, source)
        for target, value in renamed:
            set_field(result, target, value)
    return result


def projection_for(step: Step) -> Callable[[Record], Record] | None:
    """Return a record projection for *step*, or ``None`` if unconfigured."""
    fields = _option(step.config, "fields", "include_fields", "includeFields")
    exclude = _option(step.config, "exclude_fields", "excludeFields")
    mapping = _option(step.config, "field_mapping", "fieldMapping")
    if not (fields or exclude or mapping):
        return None
    return lambda record: project_record(record, fields, exclude, mapping)


class DrainStrategy(str, enum.Enum):
    """What a delivery step does once a chunk's error rate trips the limit."""

    BACKOFF = "backoff"
    SHED = "shed"
    QUEUE = "queue"


@dataclass
class ThroughputConfig:
    """Rate limit and error-rate drain settings for a delivery step.

    Read from the pipeline's ``metadata["throughput"]`` overlaid with the
    step's ``config["throughput"]``::

        {"rateLimitRps": 5,
         "pauseOnErrorRate": {"threshold": 0.5, "intervalSec": 2},
         "drainStrategy": "queue"}

    Attributes:
        rate_limit_rps: Maximum chunks started per second; 0 disables.
        error_threshold: Chunk failure ratio (0-1) that triggers the
            drain strategy; ``None`` disables.
        pause_interval: Seconds to back off, or to wait before replaying
            queued chunks.
        drain: Drain strategy.
    """

    rate_limit_rps: float = 0.0
    error_threshold: float | None = None
    pause_interval: float = DEFAULT_PAUSE_INTERVAL
    drain: DrainStrategy = DrainStrategy.BACKOFF

    @classmethod
    def from_step(cls, step: Step, pipeline: Pipeline) -> ThroughputConfig | None:
        """Build the config for *step*, or ``None`` if nothing is set.

        Raises:
            ValueError: On an out-of-range value or unknown strategy.
        """
        raw: dict[str, Any] = {}
        for source in (pipeline.metadata.get("throughput"), step.config.get("throughput")):
            if isinstance(source, Mapping):
                raw.update(source)
        if not raw:
            return None

        rps = float(raw.get("rateLimitRps", raw.get("rate_limit_rps", 0)) or 0)
        if rps < 0:
            raise ValueError(f"rateLimitRps must be >= 0, got {rps}")
        threshold: float | None = None
        interval = DEFAULT_PAUSE_INTERVAL
        pause = raw.get("pauseOnErrorRate", raw.get("pause_on_error_rate"))
        if isinstance(pause, Mapping):
            threshold = float(pause.get("threshold", 1.0))
            interval = float(pause.get("intervalSec", pause.get("interval", interval)))
        elif pause is not None:
            threshold = float(pause)
        if threshold is not None and not 0 < threshold <= 1:
            raise ValueError(f"pauseOnErrorRate threshold must be in (0, 1], got {threshold}")
        drain_raw = str(raw.get("drainStrategy", raw.get("drain_strategy", "backoff"))).lower()
        try:
            drain = DrainStrategy(drain_raw)
        except ValueError:
            raise ValueError(f"Unknown drain strategy: {drain_raw!r}") from None
        return cls(
            rate_limit_rps=rps,
            error_threshold=threshold,
            pause_interval=max(MIN_PAUSE_INTERVAL, interval),
            drain=drain,
        )


def idempotency_field(step: Step, pipeline: Pipeline) -> str | None:
    """Return the field that identifies duplicate records for *step*."""
    return _option(step.config, "idempotencyKeyField", "idempotency_key_field") or _option(
        pipeline.metadata, "idempotencyKeyField", "idempotency_key_field"
    )


def dedupe_records(records: list[Record], key_field: str) -> list[Record]:
    """Drop records whose *key_field* value was already seen.

    The first occurrence wins.  Records without the field are kept.
    """
    seen: set[str] = set()
    result: list[Record] = []
    for record in records:
        value = get_field(record, key_field, _ABSENT)
        if value is _ABSENT or value is None:
            result.append(record)
            continue
        marker = str(value)
        if marker in seen:
            continue
        seen.add(marker)
        result.append(record)
    return result


class _ErrorBuffer:
    """Holds the record errors of one delivery attempt until it is final."""

    def __init__(self) -> None:
        self.entries: list[tuple[str, str, Record | None, str | None]] = []

    def __call__(
        self,
        step_key: str,
        message: str,
        record: Record | None = None,
        stack: str | None = None,
    ) -> None:
        self.entries.append((step_key, message, record, stack))

    def flush(self, callback: RecordErrorCallback) -> None:
        for entry in self.entries:
            callback(*entry)

    def unreported(self, chunk: list[Record]) -> list[Record]:
        """Return the records of *chunk* this attempt did not report."""
        reported = [entry[2] for entry in self.entries if entry[2] is not None]
        remaining: list[Record] = []
        for record in chunk:
            for i, seen in enumerate(reported):
                if seen is record or seen == record:
                    del reported[i]
                    break
            else:
                remaining.append(record)
        return remaining


class DeliveryExecutor:
    """Chunked delivery with retry and circuit-breaker discipline.

    Used for LOAD, EXPORT, FEED and SINK.  Only the record errors of a
    chunk's last attempt are reported, so a record is never counted
    twice however often the chunk is retried.

    Args:
        project: Apply the step's field projection before delivery.
    """

    def __init__(self, project: bool = False) -> None:
        self._project = project

    def _breaker(self, context: ExecutionContext, step: Step) -> CircuitBreaker | None:
        definition = context.registry.definition(step.kind, step.adapter)
        if definition is None or not definition.network:
            return None
        url = step.config.get(definition.url_field)
        if not url:
            return None
        return context.breakers.for_target(step.adapter, str(url))

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        size = step.batch_size if step.batch_size is not None else context.batch_size
        if size < 1:
            raise ValueError(f"Step '{step.key}' batch_size must be >= 1, got {size}")
        throughput = ThroughputConfig.from_step(step, context.pipeline)

        adapter = context.registry.get(step.kind, step.adapter)
        counter = _ErrorCounter(on_record_error)
        projection = projection_for(step) if self._project else None
        batch = [projection(r) for r in records] if projection else _copy_batch(records)

        key_field = idempotency_field(step, context.pipeline)
        if key_field:
            unique = dedupe_records(batch, key_field)
            if len(unique) < len(batch):
                logger.info(
                    "Step '%s' skipped %d duplicate record(s) by '%s'",
                    step.key,
                    len(batch) - len(unique),
                    key_field,
                )
            batch = unique

        delivery = _Delivery(context, step, adapter, counter, self._breaker(context, step))
        pending: deque[list[Record]] = deque(
            batch[start:start + size] for start in range(0, len(batch), size)
        )
        deferred: list[list[Record]] = []
        first = True
        while pending:
            chunk = pending.popleft()
            if not first:
                await _throttle(context, throughput)
            first = False
            failed = await delivery.run(chunk)

            if throughput is None or throughput.error_threshold is None or not chunk:
                continue
            ratio = failed / len(chunk)
            if ratio < throughput.error_threshold:
                continue
            logger.warning(
                "Step '%s' chunk error rate %.2f >= %.2f; applying %s",
                step.key,
                ratio,
                throughput.error_threshold,
                throughput.drain.value,
            )
            await context.publish(
                PipelineEventType.THROUGHPUT_DRAINED,
                step,
                strategy=throughput.drain.value,
                errorRate=ratio,
                remainingChunks=len(pending),
            )
            if throughput.drain == DrainStrategy.SHED:
                message = f"Shed after chunk error rate {ratio:.2f}"
                for rest in pending:
                    for record in rest:
                        counter(step.key, message, record)
                pending.clear()
            elif throughput.drain == DrainStrategy.QUEUE:
                deferred.extend(pending)
                pending.clear()
            else:
                await context.sleep(throughput.pause_interval)

        if deferred and throughput is not None:
            logger.info(
                "Step '%s' replaying %d queued chunk(s) after %.1fs",
                step.key,
                len(deferred),
                throughput.pause_interval,
            )
            await context.sleep(throughput.pause_interval)
            for chunk in deferred:
                await _throttle(context, throughput)
                await delivery.run(chunk)

        return StepResult(ok=delivery.ok, fail=counter.count, records=delivery.delivered)


async def _throttle(context: ExecutionContext, throughput: ThroughputConfig | None) -> None:
    if throughput is not None and throughput.rate_limit_rps > 0:
        await context.sleep(1.0 / throughput.rate_limit_rps)


class _Delivery:
    """Delivers the chunks of one step and accumulates the outcome."""

    def __init__(
        self,
        context: ExecutionContext,
        step: Step,
        adapter: Any,
        counter: _ErrorCounter,
        breaker: CircuitBreaker | None,
    ) -> None:
        self._context = context
        self._step = step
        self._adapter = adapter
        self._counter = counter
        self._breaker = breaker
        self._policy = step.retry or context.default_retry
        self._adapter_ctx = context.adapter_context(step)
        self._index = 0
        self.ok = 0
        self.delivered: list[Record] = []

    async def run(self, chunk: list[Record]) -> int:
        """Deliver *chunk*; return the number of its records that failed."""
        step, counter = self._step, self._counter
        index = self._index
        self._index += 1
        before = counter.count

        token: int | None = None
        if self._breaker is not None:
            try:
                token = self._breaker.acquire()
            except CircuitOpenError as exc:
                logger.warning("Step '%s' chunk %d rejected: %s", step.key, index, exc)
                for record in chunk:
                    counter(step.key, str(exc), record)
                return counter.count - before

        attempts: list[_ErrorBuffer] = []

        async def deliver() -> Any:
            buffer = _ErrorBuffer()
            attempts.append(buffer)
            return await self._adapter.run(self._adapter_ctx, step, chunk, buffer)

        async def on_retry(attempt: int, exc: Exception, delay: float) -> None:
            if self._context.on_retry is not None:
                await self._context.on_retry(step, attempt, exc, delay)

        try:
            outcome = await retry_async(
                deliver, self._policy, on_retry=on_retry, sleep=self._context.sleep
            )
        except Exception as exc:
            stack = traceback.format_exc()
            logger.error(
                "Step '%s' chunk %d failed after %d attempt(s): %s",
                step.key,
                index,
                len(attempts),
                exc,
            )
            if self._breaker is not None and token is not None:
                if self._breaker.record_failure(token):
                    await self._context.publish(
                        PipelineEventType.CIRCUIT_OPENED,
                        step,
                        circuit=self._breaker.key,
                        failures=self._breaker.failures,
                    )
            last = attempts[-1] if attempts else _ErrorBuffer()
            last.flush(counter)
            for record in last.unreported(chunk):
                counter(step.key, f"Batch delivery failed: {exc}", record, stack)
            return counter.count - before

        if self._breaker is not None and token is not None:
            self._breaker.record_success(token)

        last = attempts[-1]
        last.flush(counter)
        if isinstance(outcome, StepResult):
            self.ok += outcome.ok
            self.delivered.extend(outcome.records)
        elif outcome is not None:
            written = list(outcome)
            self.ok += len(written)
            self.delivered.extend(written)
        else:
            written = last.unreported(chunk)
            self.ok += len(written)
            self.delivered.extend(written)
        return counter.count - before


def create_default_executors() -> dict[StepKind, StepExecutor]:
    """Create the executor map for every non-gate step kind."""
    batch = BatchExecutor()
    return {
        StepKind.TRIGGER: PassThroughExecutor(),
        StepKind.EXTRACT: batch,
        StepKind.TRANSFORM: batch,
        StepKind.VALIDATE: batch,
        StepKind.ENRICH: batch,
        StepKind.ROUTE: RouteExecutor(),
        StepKind.LOAD: DeliveryExecutor(),
        StepKind.EXPORT: DeliveryExecutor(project=True),
        StepKind.FEED: DeliveryExecutor(project=True),
        StepKind.SINK: DeliveryExecutor(project=True),
    }
