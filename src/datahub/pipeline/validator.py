"""Pipeline validation.

Statically checks a :class:`Pipeline` for structural errors and
warnings before it is registered or run.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from datahub.pipeline.checkpoint import RESERVED_PREFIX, is_reserved_key
from datahub.pipeline.conditions import validate_condition
from datahub.pipeline.engine import topological_order
from datahub.pipeline.errors import EngineError
from datahub.pipeline.executors import DELIVERY_KINDS, ThroughputConfig
from datahub.pipeline.gates import GateConfig
from datahub.pipeline.hooks import HookStage, ScriptRegistry, parse_action
from datahub.pipeline.models import Edge, Pipeline, StepKind
from datahub.pipeline.registry import AdapterRegistry


class ValidationLevel(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationError:
    """A single validation finding."""

    level: ValidationLevel
    message: str
    step_key: str | None = None
    edge: Edge | None = None
    rule: str = ""
    fix: str | None = None

    def __str__(self) -> str:
        location = ""
        if self.step_key:
            location = f" (step '{self.step_key}')"
        elif self.edge:
            location = f" (edge {self.edge.source} -> {self.edge.target})"
        rule_tag = f" [{self.rule}]" if self.rule else ""
        return f"[{self.level.value.upper()}]{location}{rule_tag} {self.message}"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "level": self.level.value,
            "message": self.message,
            "stepKey": self.step_key,
            "edge": f"{self.edge.source} -> {self.edge.target}" if self.edge else None,
            "rule": self.rule,
            "fix": self.fix,
        }


@runtime_checkable
class LintRule(Protocol):
    """Protocol for custom validation rules."""

    name: str

    def check(self, pipeline: Pipeline) -> list[ValidationError]: ...


def validate_pipeline(
    pipeline: Pipeline,
    registry: AdapterRegistry | None = None,
    scripts: ScriptRegistry | None = None,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationError]:
    """Run all validation checks on *pipeline*.

    Args:
        pipeline: The pipeline to validate.
        registry: Adapter registry used to check adapter codes and
            required config. Adapter checks are skipped without one.
        scripts: Script registry used to resolve interceptor hooks.
        extra_rules: Additional lint rules to run.

    Returns:
        A list of :class:`ValidationError` findings, possibly empty.
    """
    errors: list[ValidationError] = []

    _check_has_steps(pipeline, errors)
    _check_step_keys(pipeline, errors)
    _check_edge_references(pipeline, errors)
    _check_cycles(pipeline, errors)
    _check_branch_edges(pipeline, errors)
    _check_conditions(pipeline, errors)
    _check_batch_sizes(pipeline, errors)
    _check_throughput(pipeline, errors)
    _check_gates(pipeline, errors)
    _check_hooks(pipeline, scripts, errors)
    if registry is not None:
        _check_adapters(pipeline, registry, errors)

    if extra_rules:
        for rule in extra_rules:
            errors.extend(rule.check(pipeline))

    return errors


def has_errors(findings: list[ValidationError]) -> bool:
    """Return True if any finding is an error (not just a warning)."""
    return any(f.level == ValidationLevel.ERROR for f in findings)


class ValidationException(Exception):
    """Raised by :func:`validate_or_raise` when ERROR-level diagnostics exist."""

    def __init__(self, errors: list[ValidationError]) -> None:
        self.errors = errors
        super().__init__("\n".join(str(e) for e in errors))


def validate_or_raise(
    pipeline: Pipeline,
    registry: AdapterRegistry | None = None,
    scripts: ScriptRegistry | None = None,
    extra_rules: list[LintRule] | None = None,
) -> list[ValidationError]:
    """Run validation and raise on any ERROR-level diagnostic.

    Returns:
        The full list of diagnostics (only warnings/info if no exception).

    Raises:
        ValidationException: If any ERROR-level diagnostics are found.
    """
    findings = validate_pipeline(pipeline, registry, scripts, extra_rules)
    error_findings = [f for f in findings if f.level == ValidationLevel.ERROR]
    if error_findings:
        raise ValidationException(error_findings)
    return findings


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_has_steps(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    if not pipeline.steps:
        errors.append(
            ValidationError(
                level=ValidationLevel.ERROR,
                message="Pipeline has no steps",
                rule="has_steps",
            )
        )


def _check_step_keys(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for key, step in pipeline.steps.items():
        if key != step.key:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Step registered as '{key}' declares key '{step.key}'",
                    step_key=key,
                    rule="step_key",
                )
            )
        if is_reserved_key(key):
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Step keys may not start with '{RESERVED_PREFIX}'",
                    step_key=key,
                    rule="reserved_key",
                    fix="Rename the step",
                )
            )


def _check_edge_references(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for edge in pipeline.edges:
        if edge.source not in pipeline.steps:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Edge source '{edge.source}' does not exist",
                    edge=edge,
                    rule="edge_target_exists",
                )
            )
        if edge.target not in pipeline.steps:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Edge target '{edge.target}' does not exist",
                    edge=edge,
                    rule="edge_target_exists",
                )
            )
        if edge.source == edge.target:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message="Edge loops back to its own step",
                    edge=edge,
                    rule="self_loop",
                )
            )


def _check_cycles(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    if any(
        e.source not in pipeline.steps or e.target not in pipeline.steps or e.source == e.target
        for e in pipeline.edges
    ):
        return  # already covered by _check_edge_references
    try:
        topological_order(pipeline)
    except EngineError as exc:
        errors.append(
            ValidationError(
                level=ValidationLevel.ERROR,
                message=str(exc),
                rule="acyclic",
            )
        )


def _check_branch_edges(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for edge in pipeline.edges:
        if not edge.branch:
            continue
        source = pipeline.steps.get(edge.source)
        if source is None:
            continue
        if source.kind != StepKind.ROUTE:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Branch edge '{edge.branch}' leaves a {source.kind.value} step",
                    edge=edge,
                    rule="branch_source",
                    fix="Only ROUTE steps produce branches",
                )
            )
            continue
        declared = {str(b.get("name")) for b in source.config.get("branches", [])}
        declared.add(str(source.config.get("default", "default")))
        if source.config.get("branches") is not None and edge.branch not in declared:
            errors.append(
                ValidationError(
                    level=ValidationLevel.WARNING,
                    message=f"Branch '{edge.branch}' is never produced by '{source.key}'",
                    edge=edge,
                    rule="branch_declared",
                )
            )


def _check_conditions(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for step in pipeline.steps.values():
        conditions = []
        if step.kind == StepKind.ROUTE:
            conditions = [b.get("when") for b in step.config.get("branches", [])]
        for key in ("when", "condition"):
            if key in step.config:
                conditions.append(step.config[key])
        for condition in conditions:
            err = validate_condition(condition)
            if err:
                errors.append(
                    ValidationError(
                        level=ValidationLevel.ERROR,
                        message=f"Invalid condition: {err}",
                        step_key=step.key,
                        rule="condition_syntax",
                    )
                )


def _check_batch_sizes(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for step in pipeline.steps.values():
        if step.batch_size is not None and step.batch_size < 1:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"batch_size must be >= 1, got {step.batch_size}",
                    step_key=step.key,
                    rule="batch_size",
                )
            )


def _check_throughput(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for step in pipeline.steps.values():
        if step.kind not in DELIVERY_KINDS:
            continue
        try:
            ThroughputConfig.from_step(step, pipeline)
        except (TypeError, ValueError) as exc:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Invalid throughput config: {exc}",
                    step_key=step.key,
                    rule="throughput",
                )
            )


def _check_gates(pipeline: Pipeline, errors: list[ValidationError]) -> None:
    for step in pipeline.steps.values():
        if step.kind != StepKind.GATE:
            continue
        try:
            problems = GateConfig.from_step(step).problems()
        except (TypeError, ValueError) as exc:
            problems = [str(exc)]
        for problem in problems:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=problem,
                    step_key=step.key,
                    rule="gate_config",
                )
            )


def _check_hooks(
    pipeline: Pipeline,
    scripts: ScriptRegistry | None,
    errors: list[ValidationError],
) -> None:
    for stage_name, actions in pipeline.hooks.items():
        try:
            HookStage.parse(stage_name)
        except ValueError as exc:
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=str(exc),
                    rule="hook_stage",
                )
            )
            continue
        for action in actions:
            try:
                parse_action(action, scripts)
            except (TypeError, ValueError) as exc:
                errors.append(
                    ValidationError(
                        level=ValidationLevel.ERROR,
                        message=f"Hook '{stage_name}': {exc}",
                        rule="hook_action",
                    )
                )


def _check_adapters(
    pipeline: Pipeline,
    registry: AdapterRegistry,
    errors: list[ValidationError],
) -> None:
    for step in pipeline.steps.values():
        if step.kind in (StepKind.GATE, StepKind.TRIGGER) or not step.adapter:
            continue
        definition = registry.definition(step.kind, step.adapter)
        if definition is None:
            errors.append(
                ValidationError(
                    level=ValidationLevel.WARNING,
                    message=f"Unknown {step.kind.value} adapter '{step.adapter}'",
                    step_key=step.key,
                    rule="adapter_known",
                )
            )
            continue
        for name in definition.missing_config(step.config):
            errors.append(
                ValidationError(
                    level=ValidationLevel.ERROR,
                    message=f"Missing required config '{name}' for adapter '{step.adapter}'",
                    step_key=step.key,
                    rule="adapter_config",
                )
            )
