"""Tests for pipeline validation."""

from __future__ import annotations

import pytest

from datahub.pipeline.adapters import create_default_registry
from datahub.pipeline.hooks import ScriptRegistry
from datahub.pipeline.models import Edge, Pipeline, Step, StepKind
from datahub.pipeline.validator import (
    ValidationError,
    ValidationException,
    ValidationLevel,
    has_errors,
    validate_or_raise,
    validate_pipeline,
)


def _pipeline(*steps: Step, edges: list[Edge] | None = None, **kwargs) -> Pipeline:
    return Pipeline(
        name="test",
        steps={s.key: s for s in steps},
        edges=edges or [],
        **kwargs,
    )


def _rules(findings: list[ValidationError]) -> list[str]:
    return [f.rule for f in findings]


@pytest.fixture
def linear() -> Pipeline:
    return _pipeline(
        Step("extract", StepKind.EXTRACT, "inline"),
        Step("load", StepKind.LOAD, "memory"),
        edges=[Edge("extract", "load")],
    )


class TestValidatePipeline:
    def test_valid_pipeline(self, linear: Pipeline) -> None:
        assert validate_pipeline(linear, create_default_registry()) == []

    def test_no_steps(self) -> None:
        findings = validate_pipeline(_pipeline())
        assert _rules(findings) == ["has_steps"]

    def test_reserved_step_key(self) -> None:
        findings = validate_pipeline(_pipeline(Step("__completed", StepKind.EXTRACT)))
        assert "reserved_key" in _rules(findings)

    def test_mismatched_step_key(self) -> None:
        pipeline = Pipeline(name="p", steps={"a": Step("b", StepKind.EXTRACT)})
        assert _rules(validate_pipeline(pipeline)) == ["step_key"]

    def test_unknown_edge_target(self, linear: Pipeline) -> None:
        linear.edges.append(Edge("load", "ghost"))
        findings = validate_pipeline(linear)
        assert _rules(findings) == ["edge_target_exists"]
        assert "ghost" in findings[0].message

    def test_self_loop(self, linear: Pipeline) -> None:
        linear.edges.append(Edge("load", "load"))
        assert _rules(validate_pipeline(linear)) == ["self_loop"]

    def test_cycle(self) -> None:
        pipeline = _pipeline(
            Step("a", StepKind.TRANSFORM),
            Step("b", StepKind.TRANSFORM),
            Step("c", StepKind.TRANSFORM),
            edges=[Edge("a", "b"), Edge("b", "c"), Edge("c", "b")],
        )
        findings = validate_pipeline(pipeline)
        assert _rules(findings) == ["acyclic"]
        assert "b, c" in findings[0].message

    def test_branch_from_non_route(self, linear: Pipeline) -> None:
        linear.edges[0].branch = "eu"
        findings = validate_pipeline(linear)
        assert _rules(findings) == ["branch_source"]
        assert findings[0].level == ValidationLevel.ERROR

    def test_undeclared_branch_is_warning(self) -> None:
        pipeline = _pipeline(
            Step("route", StepKind.ROUTE, "branch", {"branches": [{"name": "eu", "when": "region = EU"}]}),
            Step("eu", StepKind.LOAD),
            Step("us", StepKind.LOAD),
            Step("rest", StepKind.LOAD),
            edges=[
                Edge("route", "eu", "eu"),
                Edge("route", "us", "us"),
                Edge("route", "rest", "default"),
            ],
        )
        findings = validate_pipeline(pipeline)
        assert _rules(findings) == ["branch_declared"]
        assert findings[0].level == ValidationLevel.WARNING
        assert not has_errors(findings)

    def test_bad_route_condition(self) -> None:
        pipeline = _pipeline(
            Step("route", StepKind.ROUTE, "branch", {"branches": [{"name": "x", "when": "a = 1 &&"}]}),
        )
        assert _rules(validate_pipeline(pipeline)) == ["condition_syntax"]

    def test_bad_filter_condition(self) -> None:
        pipeline = _pipeline(
            Step("f", StepKind.TRANSFORM, "filter", {"when": {"field": "a", "cmp": "near"}}),
        )
        assert _rules(validate_pipeline(pipeline)) == ["condition_syntax"]

    def test_gate_config(self) -> None:
        pipeline = _pipeline(
            Step("gate", StepKind.GATE, config={"approvalType": "TIMEOUT"}),
            Step("other", StepKind.GATE, config={"approvalType": "SOMETIMES"}),
        )
        findings = validate_pipeline(pipeline)
        assert _rules(findings) == ["gate_config", "gate_config"]
        assert "timeoutSeconds" in findings[0].message
        assert "Unknown approval type" in findings[1].message

    def test_unknown_hook_stage(self, linear: Pipeline) -> None:
        linear.hooks = {"beforeTeleport": [{"type": "LOG"}]}
        assert _rules(validate_pipeline(linear)) == ["hook_stage"]

    def test_unregistered_interceptor(self, linear: Pipeline) -> None:
        linear.hooks = {"beforeLoad": [{"type": "INTERCEPTOR", "interceptor": "stamp"}]}
        assert _rules(validate_pipeline(linear)) == ["hook_action"]

        scripts = ScriptRegistry()
        scripts.register("stamp", lambda records, context, args: records)
        assert validate_pipeline(linear, scripts=scripts) == []

    def test_unknown_adapter_is_warning(self) -> None:
        pipeline = _pipeline(Step("x", StepKind.EXTRACT, "salesforce"))
        findings = validate_pipeline(pipeline, create_default_registry())
        assert _rules(findings) == ["adapter_known"]
        assert findings[0].level == ValidationLevel.WARNING

    def test_missing_adapter_config(self) -> None:
        pipeline = _pipeline(Step("push", StepKind.EXPORT, "webhook"))
        findings = validate_pipeline(pipeline, create_default_registry())
        assert _rules(findings) == ["adapter_config"]
        assert "'url'" in findings[0].message

    def test_adapter_checks_need_registry(self) -> None:
        pipeline = _pipeline(Step("push", StepKind.EXPORT, "webhook"))
        assert validate_pipeline(pipeline) == []

    def test_extra_rules(self, linear: Pipeline) -> None:
        class NoLoads:
            name = "no_loads"

            def check(self, pipeline: Pipeline) -> list[ValidationError]:
                return [
                    ValidationError(ValidationLevel.WARNING, "loads are frowned upon", step_key=k, rule=self.name)
                    for k, s in pipeline.steps.items()
                    if s.kind == StepKind.LOAD
                ]

        findings = validate_pipeline(linear, extra_rules=[NoLoads()])
        assert _rules(findings) == ["no_loads"]

    @pytest.mark.parametrize("size", [0, -5])
    def test_batch_size_must_be_positive(self, size: int) -> None:
        pipeline = _pipeline(Step("load", StepKind.LOAD, "memory", batch_size=size))
        findings = validate_pipeline(pipeline)
        assert _rules(findings) == ["batch_size"]
        assert findings[0].level == ValidationLevel.ERROR
        assert findings[0].step_key == "load"

    def test_invalid_throughput(self) -> None:
        pipeline = _pipeline(
            Step("load", StepKind.LOAD, "memory", {"throughput": {"drainStrategy": "panic"}}),
            Step("map", StepKind.TRANSFORM, "map", {"throughput": {"drainStrategy": "panic"}}),
        )
        findings = validate_pipeline(pipeline)
        assert _rules(findings) == ["throughput"]
        assert findings[0].step_key == "load"
        assert "Unknown drain strategy" in findings[0].message


class TestValidationError:
    def test_str_with_step(self) -> None:
        finding = ValidationError(ValidationLevel.ERROR, "broken", step_key="load", rule="x")
        assert str(finding) == "[ERROR] (step 'load') [x] broken"

    def test_str_with_edge(self) -> None:
        finding = ValidationError(ValidationLevel.WARNING, "odd", edge=Edge("a", "b"))
        assert str(finding) == "[WARNING] (edge a -> b) odd"

    def test_to_dict(self) -> None:
        finding = ValidationError(ValidationLevel.ERROR, "m", edge=Edge("a", "b"), rule="r")
        assert finding.to_dict()["edge"] == "a -> b"


class TestValidateOrRaise:
    def test_raises_on_errors(self) -> None:
        with pytest.raises(ValidationException, match="has_steps") as exc_info:
            validate_or_raise(_pipeline())
        assert len(exc_info.value.errors) == 1

    def test_returns_warnings(self) -> None:
        pipeline = _pipeline(Step("x", StepKind.EXTRACT, "salesforce"))
        findings = validate_or_raise(pipeline, create_default_registry())
        assert [f.level for f in findings] == [ValidationLevel.WARNING]
