"""Tests for the step executors: batching, routing and chunked delivery."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from datahub.pipeline.adapters import MemoryStore
from datahub.pipeline.checkpoint import RunCheckpoint
from datahub.pipeline.events import PipelineEvent, PipelineEventType
from datahub.pipeline.executors import (
    BatchExecutor,
    DeliveryExecutor,
    DrainStrategy,
    ExecutionContext,
    PassThroughExecutor,
    RouteExecutor,
    ThroughputConfig,
    create_default_executors,
    dedupe_records,
    project_record,
    projection_for,
)
from datahub.pipeline.models import Pipeline, Step, StepKind, StepResult
from datahub.pipeline.registry import AdapterContext, AdapterDefinition, AdapterRegistry
from datahub.pipeline.resilience import CircuitBreakerRegistry, CircuitState, RetryPolicy

PUBLIC_URL = "http://93.184.216.34/ingest"

FAST_RETRY = RetryPolicy(retries=3, initial_delay=0.1, max_delay=1.0)
NO_RETRY = RetryPolicy(retries=0, initial_delay=0.0, max_delay=0.0)


class ChunkRecorder:
    """Delivery adapter that records every chunk it is handed."""

    def __init__(self) -> None:
        self.chunks: list[list[dict[str, Any]]] = []

    async def run(self, context: AdapterContext, step: Step, records, on_record_error) -> None:
        self.chunks.append(records)


class ExplodingAdapter:
    async def run(self, context: AdapterContext, step: Step, records, on_record_error) -> Any:
        raise RuntimeError("adapter crashed")


class BadRecordReporter:
    """Reports every record flagged ``bad`` and accepts the rest."""

    def __init__(self) -> None:
        self.chunks: list[list[dict[str, Any]]] = []

    async def run(self, context: AdapterContext, step: Step, records, on_record_error) -> None:
        self.chunks.append(records)
        for record in records:
            if record.get("bad"):
                on_record_error(step.key, "rejected", record)


class FlakyReporter:
    """Reports the first record on every attempt and fails the first *failures* attempts."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0

    async def run(self, context: AdapterContext, step: Step, records, on_record_error) -> None:
        self.attempts += 1
        on_record_error(step.key, f"bad record (attempt {self.attempts})", records[0])
        if self.attempts <= self.failures:
            raise RuntimeError("connection reset")


class ErrorLog:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []

    def __call__(self, step_key: str, message: str, record: Any = None, stack: str | None = None) -> None:
        self.calls.append((step_key, message, record))


class EventLog:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[PipelineEventType]:
        return [e.type for e in self.events]


@pytest.fixture
def errors() -> ErrorLog:
    return ErrorLog()


@pytest.fixture
def events() -> EventLog:
    return EventLog()


def _context(registry: AdapterRegistry, pipeline: Pipeline | None = None, **kwargs) -> ExecutionContext:
    return ExecutionContext(
        run_id="run-1",
        pipeline=pipeline or Pipeline(name="orders"),
        checkpoint=RunCheckpoint(),
        registry=registry,
        **kwargs,
    )


class TestBatchExecutor:
    async def test_counts_ok_and_reported_failures(self, registry: AdapterRegistry, errors: ErrorLog) -> None:
        step = Step("v", StepKind.VALIDATE, "schema", {"fields": {"id": {"required": True}}})
        result = await BatchExecutor().execute(
            _context(registry), step, [{"id": 1}, {}, {"id": 3}], errors
        )
        assert result.ok == 2
        assert result.fail == 1
        assert result.records == [{"id": 1}, {"id": 3}]
        assert errors.calls == [("v", "id is required", {})]

    async def test_input_is_copied(self, registry: AdapterRegistry, errors: ErrorLog) -> None:
        step = Step("m", StepKind.TRANSFORM, "map", {"set": {"x": 1}})
        records = [{"id": 1}]
        await BatchExecutor().execute(_context(registry), step, records, errors)
        assert records == [{"id": 1}]

    async def test_unknown_adapter_passes_through(self, registry: AdapterRegistry, errors: ErrorLog) -> None:
        step = Step("t", StepKind.TRANSFORM, "no-such-adapter")
        result = await BatchExecutor().execute(_context(registry), step, [{"id": 1}], errors)
        assert result == StepResult(ok=1, records=[{"id": 1}])


class TestRouteExecutor:
    async def test_branches_and_union(self, registry: AdapterRegistry, errors: ErrorLog) -> None:
        step = Step(
            "route",
            StepKind.ROUTE,
            "branch",
            {"branches": [{"name": "eu", "when": "region = EU"}], "default": "rest"},
        )
        records = [{"region": "EU"}, {"region": "US"}]
        result = await RouteExecutor().execute(_context(registry), step, records, errors)

        assert result.branches == {"eu": [{"region": "EU"}], "rest": [{"region": "US"}]}
        assert result.records == records
        assert result.ok == 2


class TestPassThroughExecutor:
    async def test_forwards_input(self, registry: AdapterRegistry, errors: ErrorLog) -> None:
        step = Step("trigger", StepKind.TRIGGER)
        result = await PassThroughExecutor().execute(_context(registry), step, [{"a": 1}], errors)
        assert result == StepResult(ok=1, records=[{"a": 1}])


class TestDeliveryExecutor:
    async def test_memory_load_with_required_field(
        self, registry: AdapterRegistry, memory_store: MemoryStore, errors: ErrorLog
    ) -> None:
        records = [{"id": n} for n in range(7)] + [{"name": "no id"} for _ in range(3)]
        step = Step("load", StepKind.LOAD, "memory", {"required": ["id"]})

        result = await DeliveryExecutor().execute(_context(registry), step, records, errors)

        assert (result.ok, result.fail) == (7, 3)
        assert len(errors.calls) == 3
        assert all(message == "Missing required field(s): id" for _, message, _ in errors.calls)
        assert len(memory_store.collection("default")) == 7

    async def test_chunks_by_step_batch_size(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        step = Step("load", StepKind.LOAD, "recorder", batch_size=4)

        result = await DeliveryExecutor().execute(
            _context(registry), step, [{"n": n} for n in range(10)], errors
        )

        assert [len(c) for c in recorder.chunks] == [4, 4, 2]
        assert result.ok == 10
        assert result.fail == 0

    async def test_context_batch_size_is_default(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        step = Step("load", StepKind.LOAD, "recorder")

        await DeliveryExecutor().execute(
            _context(registry, batch_size=3), step, [{"n": n} for n in range(5)], errors
        )
        assert [len(c) for c in recorder.chunks] == [3, 2]

    async def test_transient_failures_retried(
        self, registry: AdapterRegistry, http: httpx.AsyncClient, transport, sleeps, errors: ErrorLog
    ) -> None:
        transport.statuses = [503, 503]
        retries: list[int] = []

        async def on_retry(step: Step, attempt: int, exc: Exception, delay: float) -> None:
            retries.append(attempt)

        step = Step("push", StepKind.EXPORT, "webhook", {"url": PUBLIC_URL})
        context = _context(registry, http=http, default_retry=FAST_RETRY, sleep=sleeps, on_retry=on_retry)

        result = await DeliveryExecutor(project=True).execute(context, step, [{"id": 1}], errors)

        assert result.ok == 1
        assert errors.calls == []
        assert sleeps.calls == pytest.approx([0.1, 0.2])
        assert retries == [1, 2]
        assert len(transport.requests) == 3

    async def test_exhausted_chunk_reported_per_record(self, sleeps, errors: ErrorLog) -> None:
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "boom", None, ExplodingAdapter())
        step = Step("load", StepKind.LOAD, "boom", retry=RetryPolicy(retries=1, initial_delay=0.5, max_delay=0.5))

        result = await DeliveryExecutor().execute(
            _context(registry, sleep=sleeps), step, [{"id": 1}, {"id": 2}], errors
        )

        assert (result.ok, result.fail) == (0, 2)
        assert sleeps.calls == [0.5]
        assert [message for _, message, _ in errors.calls] == [
            "Batch delivery failed: adapter crashed",
            "Batch delivery failed: adapter crashed",
        ]

    async def test_circuit_opens_and_rejects_next_chunk(
        self, registry: AdapterRegistry, http: httpx.AsyncClient, transport, clock, errors: ErrorLog, events: EventLog
    ) -> None:
        transport.statuses = [500]
        breakers = CircuitBreakerRegistry(failure_threshold=1, reset_timeout=30.0, clock=clock)
        step = Step("push", StepKind.EXPORT, "webhook", {"url": PUBLIC_URL}, batch_size=1)
        context = _context(
            registry, http=http, breakers=breakers, default_retry=NO_RETRY, emit=events
        )

        result = await DeliveryExecutor(project=True).execute(
            context, step, [{"id": 1}, {"id": 2}], errors
        )

        assert (result.ok, result.fail) == (0, 2)
        assert len(transport.requests) == 1
        assert errors.calls[0][1].startswith("Batch delivery failed:")
        assert errors.calls[1][1] == "Circuit open for webhook:http://93.184.216.34"
        assert events.types == [PipelineEventType.CIRCUIT_OPENED]
        assert events.events[0].data["circuit"] == "webhook:http://93.184.216.34"
        assert breakers.get("webhook:http://93.184.216.34").state == CircuitState.OPEN

    async def test_non_network_adapter_has_no_breaker(self, sleeps, errors: ErrorLog) -> None:
        registry = AdapterRegistry()
        registry.register(
            StepKind.LOAD, "boom", AdapterDefinition("boom", StepKind.LOAD), ExplodingAdapter()
        )
        breakers = CircuitBreakerRegistry(failure_threshold=1)
        step = Step("load", StepKind.LOAD, "boom", {"url": PUBLIC_URL}, batch_size=1)

        await DeliveryExecutor().execute(
            _context(registry, breakers=breakers, default_retry=NO_RETRY, sleep=sleeps),
            step,
            [{"id": 1}, {"id": 2}],
            errors,
        )

        assert breakers.snapshot() == []
        assert all(m.startswith("Batch delivery failed") for _, m, _ in errors.calls)

    async def test_projection_applied_before_delivery(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.EXPORT, "recorder", None, recorder)
        step = Step(
            "export",
            StepKind.EXPORT,
            "recorder",
            {"fields": ["id", "customer.email"], "fieldMapping": {"customer.email": "email"}},
        )
        record = {"id": 1, "secret": "x", "customer": {"email": "a@example.com", "phone": "1"}}

        result = await DeliveryExecutor(project=True).execute(_context(registry), step, [record], errors)

        assert recorder.chunks == [[{"id": 1, "customer": {}, "email": "a@example.com"}]]
        assert result.records == recorder.chunks[0]

    async def test_load_ignores_projection_config(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        step = Step("load", StepKind.LOAD, "recorder", {"fields": ["id"]})

        await DeliveryExecutor().execute(_context(registry), step, [{"id": 1, "x": 2}], errors)
        assert recorder.chunks == [[{"id": 1, "x": 2}]]

    async def test_retried_chunk_reports_final_attempt_only(self, sleeps, errors: ErrorLog) -> None:
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "flaky", None, FlakyReporter(failures=1))
        step = Step("load", StepKind.LOAD, "flaky", retry=RetryPolicy(retries=1, initial_delay=0.1, max_delay=0.1))

        result = await DeliveryExecutor().execute(
            _context(registry, sleep=sleeps), step, [{"id": 1}, {"id": 2}], errors
        )

        assert errors.calls == [("load", "bad record (attempt 2)", {"id": 1})]
        assert (result.ok, result.fail) == (1, 1)
        assert result.records == [{"id": 2}]

    async def test_exhausted_chunk_does_not_double_report(self, sleeps, errors: ErrorLog) -> None:
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "flaky", None, FlakyReporter(failures=5))
        step = Step("load", StepKind.LOAD, "flaky", retry=RetryPolicy(retries=1, initial_delay=0.1, max_delay=0.1))

        result = await DeliveryExecutor().execute(
            _context(registry, sleep=sleeps), step, [{"id": 1}, {"id": 2}], errors
        )

        assert errors.calls == [
            ("load", "bad record (attempt 2)", {"id": 1}),
            ("load", "Batch delivery failed: connection reset", {"id": 2}),
        ]
        assert (result.ok, result.fail) == (0, 2)

    @pytest.mark.parametrize("step_size,default_size", [(0, 100), (-5, 100), (None, 0)])
    async def test_batch_size_below_one_rejected(
        self, errors: ErrorLog, step_size: int | None, default_size: int
    ) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        step = Step("load", StepKind.LOAD, "recorder", batch_size=step_size)

        with pytest.raises(ValueError, match="batch_size must be >= 1"):
            await DeliveryExecutor().execute(
                _context(registry, batch_size=default_size), step, [{"n": 1}], errors
            )
        assert recorder.chunks == []


def _throughput_step(throughput: dict[str, Any], batch_size: int = 2) -> Step:
    return Step("load", StepKind.LOAD, "reporter", {"throughput": throughput}, batch_size=batch_size)


FIVE_RECORDS = [{"n": 1, "bad": True}, {"n": 2, "bad": True}, {"n": 3}, {"n": 4}, {"n": 5}]


class TestThroughput:
    @pytest.fixture
    def reporter(self) -> BadRecordReporter:
        return BadRecordReporter()

    @pytest.fixture
    def reporter_registry(self, reporter: BadRecordReporter) -> AdapterRegistry:
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "reporter", None, reporter)
        return registry

    async def test_rate_limit_spaces_chunks(self, reporter_registry, sleeps, errors: ErrorLog) -> None:
        step = _throughput_step({"rateLimitRps": 4}, batch_size=1)

        await DeliveryExecutor().execute(
            _context(reporter_registry, sleep=sleeps), step, [{"n": 1}, {"n": 2}, {"n": 3}], errors
        )
        assert sleeps.calls == [0.25, 0.25]

    async def test_step_overrides_pipeline_throughput(self, reporter_registry, sleeps, errors: ErrorLog) -> None:
        pipeline = Pipeline(name="orders", metadata={"throughput": {"rateLimitRps": 4}})
        step = _throughput_step({"rateLimitRps": 2}, batch_size=1)

        await DeliveryExecutor().execute(
            _context(reporter_registry, pipeline, sleep=sleeps), step, [{"n": 1}, {"n": 2}], errors
        )
        assert sleeps.calls == [0.5]

    async def test_backoff_pauses_then_continues(
        self, reporter_registry, reporter: BadRecordReporter, sleeps, errors: ErrorLog, events: EventLog
    ) -> None:
        step = _throughput_step({"pauseOnErrorRate": {"threshold": 0.5, "intervalSec": 2}})

        result = await DeliveryExecutor().execute(
            _context(reporter_registry, sleep=sleeps, emit=events), step, FIVE_RECORDS, errors
        )

        assert sleeps.calls == [2.0]
        assert len(reporter.chunks) == 3
        assert (result.ok, result.fail) == (3, 2)
        assert events.types == [PipelineEventType.THROUGHPUT_DRAINED]
        assert events.events[0].data["strategy"] == "backoff"

    async def test_shed_fails_remaining_records(
        self, reporter_registry, reporter: BadRecordReporter, sleeps, errors: ErrorLog, events: EventLog
    ) -> None:
        step = _throughput_step({"pauseOnErrorRate": {"threshold": 0.5}, "drainStrategy": "shed"})

        result = await DeliveryExecutor().execute(
            _context(reporter_registry, sleep=sleeps, emit=events), step, FIVE_RECORDS, errors
        )

        assert len(reporter.chunks) == 1
        assert (result.ok, result.fail) == (0, 5)
        assert [m for _, m, _ in errors.calls[2:]] == ["Shed after chunk error rate 1.00"] * 3
        assert events.events[0].data["remainingChunks"] == 2
        assert sleeps.calls == []

    async def test_queue_defers_remaining_chunks(
        self, reporter_registry, reporter: BadRecordReporter, sleeps, errors: ErrorLog
    ) -> None:
        step = _throughput_step(
            {"pauseOnErrorRate": {"threshold": 0.5, "intervalSec": 3}, "drainStrategy": "queue"}
        )

        result = await DeliveryExecutor().execute(
            _context(reporter_registry, sleep=sleeps), step, FIVE_RECORDS, errors
        )

        assert sleeps.calls == [3.0]
        assert [[r["n"] for r in c] for c in reporter.chunks] == [[1, 2], [3, 4], [5]]
        assert (result.ok, result.fail) == (3, 2)

    async def test_below_threshold_no_drain(self, reporter_registry, sleeps, errors: ErrorLog, events: EventLog) -> None:
        step = _throughput_step({"pauseOnErrorRate": {"threshold": 0.5}}, batch_size=5)
        records = [{"n": 1, "bad": True}, {"n": 2}, {"n": 3}]

        await DeliveryExecutor().execute(
            _context(reporter_registry, sleep=sleeps, emit=events), step, records, errors
        )
        assert events.events == []
        assert sleeps.calls == []


class TestThroughputConfig:
    def test_unconfigured(self) -> None:
        assert ThroughputConfig.from_step(Step("s", StepKind.LOAD), Pipeline(name="p")) is None

    def test_parses_snake_case(self) -> None:
        step = Step("s", StepKind.LOAD, config={"throughput": {
            "rate_limit_rps": 10, "pause_on_error_rate": 0.25, "drain_strategy": "QUEUE",
        }})
        config = ThroughputConfig.from_step(step, Pipeline(name="p"))
        assert config == ThroughputConfig(
            rate_limit_rps=10.0, error_threshold=0.25, pause_interval=1.0, drain=DrainStrategy.QUEUE
        )

    def test_interval_floor(self) -> None:
        step = Step("s", StepKind.LOAD, config={"throughput": {"pauseOnErrorRate": {"threshold": 1, "intervalSec": 0}}})
        assert ThroughputConfig.from_step(step, Pipeline(name="p")).pause_interval == 0.1

    @pytest.mark.parametrize(
        "throughput,message",
        [
            ({"drainStrategy": "panic"}, "Unknown drain strategy"),
            ({"rateLimitRps": -1}, "rateLimitRps"),
            ({"pauseOnErrorRate": {"threshold": 1.5}}, "threshold"),
        ],
    )
    def test_invalid(self, throughput: dict[str, Any], message: str) -> None:
        step = Step("s", StepKind.LOAD, config={"throughput": throughput})
        with pytest.raises(ValueError, match=message):
            ThroughputConfig.from_step(step, Pipeline(name="p"))


class TestIdempotency:
    async def test_duplicate_keys_dropped(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        step = Step("load", StepKind.LOAD, "recorder", {"idempotencyKeyField": "id"})
        records = [{"id": 1, "v": "a"}, {"id": 1, "v": "b"}, {"id": 2}, {"v": "no id"}]

        result = await DeliveryExecutor().execute(_context(registry), step, records, errors)

        assert recorder.chunks == [[{"id": 1, "v": "a"}, {"id": 2}, {"v": "no id"}]]
        assert (result.ok, result.fail) == (3, 0)

    async def test_pipeline_level_key_field(self, errors: ErrorLog) -> None:
        recorder = ChunkRecorder()
        registry = AdapterRegistry()
        registry.register(StepKind.LOAD, "recorder", None, recorder)
        pipeline = Pipeline(name="orders", metadata={"idempotencyKeyField": "order.id"})
        step = Step("load", StepKind.LOAD, "recorder")
        records = [{"order": {"id": "A"}}, {"order": {"id": "A"}}, {"order": {"id": "B"}}]

        await DeliveryExecutor().execute(_context(registry, pipeline), step, records, errors)
        assert recorder.chunks == [[{"order": {"id": "A"}}, {"order": {"id": "B"}}]]

    def test_dedupe_records_keeps_first(self) -> None:
        records = [{"k": 1, "n": 1}, {"k": 1, "n": 2}, {"k": None}, {"k": None}]
        assert dedupe_records(records, "k") == [{"k": 1, "n": 1}, {"k": None}, {"k": None}]



class TestProjection:
    def test_include_wins_over_exclude(self) -> None:
        record = {"a": 1, "b": 2, "c": 3}
        assert project_record(record, fields=["a"], exclude_fields=["a"]) == {"a": 1}

    def test_exclude(self) -> None:
        record = {"a": 1, "b": {"c": 2, "d": 3}}
        assert project_record(record, exclude_fields=["b.c"]) == {"a": 1, "b": {"d": 3}}

    def test_mapping_only(self) -> None:
        assert project_record({"a": 1, "b": 2}, field_mapping={"a": "alpha"}) == {"b": 2, "alpha": 1}

    def test_does_not_mutate(self) -> None:
        record = {"a": {"b": 1}}
        projected = project_record(record, exclude_fields=["a.b"])
        assert record == {"a": {"b": 1}}
        assert projected == {"a": {}}

    def test_projection_for(self) -> None:
        assert projection_for(Step("s", StepKind.SINK)) is None
        project = projection_for(Step("s", StepKind.SINK, config={"excludeFields": ["x"]}))
        assert project is not None
        assert project({"x": 1, "y": 2}) == {"y": 2}


class TestDefaultExecutors:
    def test_every_non_gate_kind_covered(self) -> None:
        executors = create_default_executors()
        assert set(executors) == set(StepKind) - {StepKind.GATE}
        assert isinstance(executors[StepKind.SINK], DeliveryExecutor)
        assert isinstance(executors[StepKind.ROUTE], RouteExecutor)
