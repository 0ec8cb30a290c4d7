"""Datahub Pipeline Engine - DAG execution for data-integration pipelines.

Runs pipelines of typed steps (extract, transform, validate, enrich,
route, load, export, feed, sink, gate) through pluggable adapters, with
lifecycle hooks, per-record error isolation, retry and circuit-breaker
discipline, and approval gates that pause a run and resume it from its
checkpoint.
"""

from datahub.pipeline.adapters import MemoryStore, create_default_registry
from datahub.pipeline.checkpoint import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    RunCheckpoint,
)
from datahub.pipeline.engine import PipelineEngine, topological_order
from datahub.pipeline.errors import (
    CircuitOpenError,
    DataHubError,
    DefinitionError,
    EngineError,
    GateNotFoundError,
    HookActionError,
    RunNotFoundError,
    StepFailedError,
    StepTimeoutError,
    UnsafeUrlError,
)
from datahub.pipeline.events import PipelineEvent, PipelineEventEmitter, PipelineEventType
from datahub.pipeline.executors import DrainStrategy, ThroughputConfig
from datahub.pipeline.gates import ApprovalType, GateConfig, GateNotifier
from datahub.pipeline.hooks import HookRunner, HookStage, ScriptRegistry
from datahub.pipeline.models import (
    Edge,
    Pipeline,
    Record,
    RecordError,
    Run,
    RunStatus,
    Step,
    StepKind,
    StepResult,
)
from datahub.pipeline.parser import load_definition, parse_definition, parse_dot_file, parse_dot_string
from datahub.pipeline.registry import AdapterContext, AdapterDefinition, AdapterRegistry
from datahub.pipeline.resilience import CircuitBreakerRegistry, RetryPolicy
from datahub.pipeline.reviewer import AutoApproveReviewer, CLIReviewer, QueueReviewer
from datahub.pipeline.server import PipelineServer
from datahub.pipeline.service import PipelineService
from datahub.pipeline.settings import EngineSettings
from datahub.pipeline.validator import (
    ValidationException,
    validate_or_raise,
    validate_pipeline,
)

__all__ = [
    "AdapterContext",
    "AdapterDefinition",
    "AdapterRegistry",
    "ApprovalType",
    "AutoApproveReviewer",
    "CheckpointStore",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CLIReviewer",
    "DataHubError",
    "DefinitionError",
    "DrainStrategy",
    "Edge",
    "EngineError",
    "EngineSettings",
    "FileCheckpointStore",
    "GateConfig",
    "GateNotFoundError",
    "GateNotifier",
    "HookActionError",
    "HookRunner",
    "HookStage",
    "InMemoryCheckpointStore",
    "MemoryStore",
    "Pipeline",
    "PipelineEngine",
    "PipelineEvent",
    "PipelineEventEmitter",
    "PipelineEventType",
    "PipelineServer",
    "PipelineService",
    "QueueReviewer",
    "Record",
    "RecordError",
    "RetryPolicy",
    "Run",
    "RunCheckpoint",
    "RunNotFoundError",
    "RunStatus",
    "ScriptRegistry",
    "Step",
    "StepFailedError",
    "StepKind",
    "StepResult",
    "StepTimeoutError",
    "ThroughputConfig",
    "UnsafeUrlError",
    "ValidationException",
    "create_default_registry",
    "load_definition",
    "parse_definition",
    "parse_dot_file",
    "parse_dot_string",
    "topological_order",
    "validate_or_raise",
    "validate_pipeline",
]
