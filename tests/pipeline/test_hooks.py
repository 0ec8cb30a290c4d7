"""Tests for lifecycle hook stages, actions and the hook runner."""

from __future__ import annotations

import asyncio
import hashlib
import hmac

import pytest

from datahub.pipeline.errors import HookActionError
from datahub.pipeline.events import PipelineEvent, PipelineEventEmitter, PipelineEventType
from datahub.pipeline.hooks import (
    EmitAction,
    HookContext,
    HookRunner,
    HookStage,
    InterceptorAction,
    LogAction,
    ScriptAction,
    ScriptRegistry,
    TriggerPipelineAction,
    WebhookAction,
    compile_hooks,
    parse_action,
    sign_payload,
    step_stages,
)
from datahub.pipeline.models import StepKind
from datahub.pipeline.resilience import RetryPolicy

PUBLIC_HOOK_URL = "http://93.184.216.34/hook"


def stamp(records, context, args):
    return [{**r, "a": True} for r in records]


async def add_source(records, context, args):
    return [{**r, "source": args.get("source", "hook")} for r in records]


def explode(records, context, args):
    raise RuntimeError("interceptor exploded")


@pytest.fixture
def context() -> HookContext:
    return HookContext(stage=HookStage.BEFORE_LOAD, run_id="run-1", pipeline_name="orders", step_key="load")


class TestHookStage:
    def test_eighteen_stages(self) -> None:
        assert len(HookStage) == 18

    def test_parse_value_or_name(self) -> None:
        assert HookStage.parse("beforeLoad") == HookStage.BEFORE_LOAD
        assert HookStage.parse("ON_DEAD_LETTER") == HookStage.ON_DEAD_LETTER

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown hook stage"):
            HookStage.parse("beforeTeleport")

    def test_step_stages(self) -> None:
        assert step_stages(StepKind.ENRICH) == (HookStage.BEFORE_ENRICH, HookStage.AFTER_ENRICH)
        assert step_stages(StepKind.EXPORT) is None
        assert step_stages(StepKind.GATE) is None


class TestParseAction:
    def test_interceptor_resolved_from_registry(self) -> None:
        scripts = ScriptRegistry()
        scripts.register("stamp", stamp)
        action = parse_action({"type": "interceptor", "interceptor": "stamp", "timeoutMs": 250}, scripts)
        assert isinstance(action, InterceptorAction)
        assert action.fn is stamp
        assert action.timeout == pytest.approx(0.25)
        assert action.display_name == "stamp"

    def test_unregistered_interceptor(self) -> None:
        with pytest.raises(ValueError, match="Interceptor 'stamp' is not registered"):
            parse_action({"type": "INTERCEPTOR", "interceptor": "stamp"}, ScriptRegistry())

    def test_trigger_pipeline_aliases(self) -> None:
        action = parse_action({"type": "trigger-pipeline", "pipelineCode": "child", "passRecords": "false"})
        assert isinstance(action, TriggerPipelineAction)
        assert action.pipeline == "child"
        assert action.pass_records is False

    def test_script_requires_name(self) -> None:
        with pytest.raises(ValueError, match="requires 'script'"):
            parse_action({"type": "SCRIPT"})

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError, match="Unknown hook action type"):
            parse_action({"type": "CARRIER_PIGEON"})

    def test_webhook_signing_and_retry(self) -> None:
        action = parse_action({
            "type": "WEBHOOK",
            "url": PUBLIC_HOOK_URL,
            "secret": "s3cret",
            "signatureHeader": "X-Hub-Signature-256",
            "retry": {"maxRetries": 4, "initialDelayMs": 200},
        })
        assert isinstance(action, WebhookAction)
        assert action.secret == "s3cret"
        assert action.signature_header == "X-Hub-Signature-256"
        assert action.retry is not None
        assert action.retry.retries == 4
        assert action.retry.initial_delay == pytest.approx(0.2)

    def test_webhook_defaults(self) -> None:
        action = parse_action({"type": "WEBHOOK", "url": PUBLIC_HOOK_URL})
        assert action.secret is None
        assert action.signature_header == "X-DataHub-Signature"
        assert action.retry is None

    def test_webhook_retry_must_be_mapping(self) -> None:
        with pytest.raises(ValueError, match="'retry' must be a mapping"):
            parse_action({"type": "WEBHOOK", "url": PUBLIC_HOOK_URL, "retry": 3})

    def test_instances_pass_through(self) -> None:
        action = LogAction(message="hi")
        assert parse_action(action) is action

    def test_compile_hooks(self) -> None:
        compiled = compile_hooks({
            "beforeLoad": [{"type": "LOG", "message": "loading"}],
            "onError": [{"type": "EMIT", "event": "orders.failed"}],
        })
        assert list(compiled) == [HookStage.BEFORE_LOAD, HookStage.ON_ERROR]
        assert isinstance(compiled[HookStage.ON_ERROR][0], EmitAction)


class TestHookRunner:
    async def test_interceptor_rewrites_batch(self, context: HookContext) -> None:
        runner = HookRunner()
        result = await runner.run([InterceptorAction(fn=stamp)], [{}, {"x": 1}], context)
        assert result == [{"a": True}, {"x": 1, "a": True}]

    async def test_actions_chain_in_order(self, context: HookContext) -> None:
        runner = HookRunner()
        actions = [
            InterceptorAction(fn=stamp),
            LogAction(message="between"),
            InterceptorAction(fn=add_source, args={"source": "crm"}),
        ]
        result = await runner.run(actions, [{"id": 1}], context)
        assert result == [{"id": 1, "a": True, "source": "crm"}]

    async def test_input_batch_not_mutated(self, context: HookContext) -> None:
        def mutate(records, context, args):
            records[0]["changed"] = True
            return records

        original = [{"id": 1}]
        result = await HookRunner().run([InterceptorAction(fn=mutate)], original, context)
        assert original == [{"id": 1}]
        assert result == [{"id": 1, "changed": True}]

    async def test_failing_interceptor_is_fatal(self, context: HookContext) -> None:
        with pytest.raises(HookActionError, match="interceptor exploded") as exc_info:
            await HookRunner().run([InterceptorAction(name="boom", fn=explode)], [{}], context)
        assert exc_info.value.stage == "beforeLoad"
        assert exc_info.value.action == "boom"

    async def test_failure_tolerated_without_fail_on_error(self, context: HookContext) -> None:
        actions = [InterceptorAction(fn=explode, fail_on_error=False), InterceptorAction(fn=stamp)]
        result = await HookRunner().run(actions, [{"id": 1}], context)
        assert result == [{"id": 1, "a": True}]

    async def test_interceptor_timeout(self, context: HookContext) -> None:
        async def slow(records, context, args):
            await asyncio.sleep(1)
            return records

        with pytest.raises(HookActionError):
            await HookRunner().run([InterceptorAction(fn=slow, timeout=0.01)], [{}], context)

    async def test_interceptor_must_return_list(self, context: HookContext) -> None:
        with pytest.raises(HookActionError, match="must return a list"):
            await HookRunner().run(
                [InterceptorAction(fn=lambda records, context, args: None)], [{}], context
            )

    async def test_script_action(self, context: HookContext) -> None:
        scripts = ScriptRegistry()

        @scripts.script("stamp")
        def _stamp(records, context, args):
            return stamp(records, context, args)

        result = await HookRunner(scripts=scripts).run([ScriptAction(script="stamp")], [{}], context)
        assert result == [{"a": True}]

    async def test_missing_script_is_fatal(self, context: HookContext) -> None:
        with pytest.raises(HookActionError, match="not registered"):
            await HookRunner().run([ScriptAction(script="ghost")], [{}], context)

    async def test_observers_cannot_modify_batch(self, context: HookContext) -> None:
        runner = HookRunner()
        attempted: list[bool] = []

        async def meddle(action, records, ctx):
            attempted.append(True)
            records[0]["x"] = 99

        runner.register_handler(LogAction, meddle)
        result = await runner.run([LogAction()], [{"x": 1}], context)
        assert attempted == [True]
        assert result == [{"x": 1}]

    async def test_observers_cannot_modify_nested_data(self, context: HookContext) -> None:
        runner = HookRunner()

        async def meddle(action, records, ctx):
            records[0]["customer"]["email"] = "changed@example.com"
            records[0]["tags"].append("meddled")

        runner.register_handler(LogAction, meddle)
        batch = [{"customer": {"email": "a@example.com"}, "tags": ["new"]}]
        result = await runner.run([LogAction()], batch, context)

        assert result == [{"customer": {"email": "a@example.com"}, "tags": ["new"]}]
        assert batch[0]["tags"] == ["new"]

    async def test_emit_action_publishes(self, context: HookContext) -> None:
        emitter = PipelineEventEmitter()
        received: list[PipelineEvent] = []

        async def listener(event: PipelineEvent) -> None:
            received.append(event)

        emitter.on(PipelineEventType.HOOK_EMIT, listener)
        await HookRunner(event_emitter=emitter).run(
            [EmitAction(event="orders.loading", data={"team": "ops"})], [{}, {}], context
        )

        [event] = received
        assert event.run_id == "run-1"
        assert event.data == {
            "event": "orders.loading",
            "stage": "beforeLoad",
            "recordCount": 2,
            "team": "ops",
        }

    async def test_trigger_action_passes_copies(self, context: HookContext) -> None:
        calls: list[tuple[str, list]] = []

        async def trigger(name, records, ctx):
            records[0]["touched"] = True
            calls.append((name, records))

        runner = HookRunner(trigger=trigger)
        batch = [{"id": 1}]
        result = await runner.run([TriggerPipelineAction(pipeline="child")], batch, context)

        assert calls == [("child", [{"id": 1, "touched": True}])]
        assert batch == [{"id": 1}]
        assert result is batch

    async def test_trigger_without_records(self, context: HookContext) -> None:
        calls: list[list] = []

        async def trigger(name, records, ctx):
            calls.append(records)

        await HookRunner(trigger=trigger).run(
            [TriggerPipelineAction(pipeline="child", pass_records=False)], [{"id": 1}], context
        )
        assert calls == [[]]

    async def test_webhook_posts_context_and_records(self, context: HookContext, http, transport) -> None:
        runner = HookRunner(http=http)
        await runner.run(
            [WebhookAction(url=PUBLIC_HOOK_URL, headers={"X-Token": "t"})], [{"id": 1}], context
        )

        [request] = transport.requests
        assert str(request.url) == PUBLIC_HOOK_URL
        assert request.headers["X-Token"] == "t"
        body = transport.bodies[0]
        assert body["stage"] == "beforeLoad"
        assert body["stepKey"] == "load"
        assert body["recordCount"] == 1
        assert body["records"] == [{"id": 1}]

    async def test_webhook_failure_is_logged_not_raised(self, context: HookContext, http, transport) -> None:
        transport.statuses = [500]
        result = await HookRunner(http=http).run(
            [WebhookAction(url=PUBLIC_HOOK_URL)], [{"id": 1}], context
        )
        assert result == [{"id": 1}]

    async def test_webhook_to_private_address_blocked(self, context: HookContext, http, transport) -> None:
        await HookRunner(http=http).run([WebhookAction(url="http://10.0.0.1/hook")], [{}], context)
        assert transport.requests == []

    async def test_webhook_failure_single_attempt_by_default(self, context: HookContext, http, transport) -> None:
        transport.statuses = [500]
        await HookRunner(http=http).run([WebhookAction(url=PUBLIC_HOOK_URL)], [{"id": 1}], context)
        assert len(transport.requests) == 1

    async def test_webhook_signed_with_secret(self, context: HookContext, http, transport) -> None:
        await HookRunner(http=http).run(
            [WebhookAction(url=PUBLIC_HOOK_URL, secret="s3cret")], [{"id": 1}], context
        )

        [request] = transport.requests
        expected = hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-DataHub-Signature"] == f"sha256={expected}"
        assert request.headers["Content-Type"] == "application/json"
        assert transport.bodies[0]["records"] == [{"id": 1}]

    async def test_webhook_unsigned_without_secret(self, context: HookContext, http, transport) -> None:
        await HookRunner(http=http).run([WebhookAction(url=PUBLIC_HOOK_URL)], [{}], context)
        assert "X-DataHub-Signature" not in transport.requests[0].headers

    async def test_webhook_retried_with_policy(self, context: HookContext, http, transport, sleeps) -> None:
        transport.statuses = [503, 502]
        action = WebhookAction(
            url=PUBLIC_HOOK_URL, retry=RetryPolicy(retries=2, initial_delay=0.1, max_delay=1.0)
        )

        await HookRunner(http=http, sleep=sleeps).run([action], [{"id": 1}], context)

        assert len(transport.requests) == 3
        assert sleeps.calls == pytest.approx([0.1, 0.2])

    async def test_webhook_retries_exhausted_is_logged(self, context: HookContext, http, transport, sleeps) -> None:
        transport.statuses = [500, 500]
        action = WebhookAction(
            url=PUBLIC_HOOK_URL, retry=RetryPolicy(retries=1, initial_delay=0.1, max_delay=1.0)
        )

        result = await HookRunner(http=http, sleep=sleeps).run([action], [{"id": 1}], context)

        assert result == [{"id": 1}]
        assert len(transport.requests) == 2


class TestSignPayload:
    def test_known_digest(self) -> None:
        body = b'{"id": 1}'
        expected = hmac.new(b"key", body, hashlib.sha256).hexdigest()
        assert sign_payload("key", body) == "sha256=" + expected
        assert sign_payload("other", body) != sign_payload("key", body)
