"""Lifecycle hooks that observe or rewrite the in-flight batch.

A pipeline binds ordered :class:`HookAction` lists to any of the 18
:class:`HookStage` values.  :meth:`HookRunner.run` pulls a batch through
a stage's actions in declaration order:

- :class:`InterceptorAction` and :class:`ScriptAction` receive
  ``(records, context, args)`` and return the replacement batch, which
  feeds the next action.  A failure is fatal (:class:`HookActionError`)
  unless the action sets ``fail_on_error=False``, in which case it is
  logged and the batch passes on unchanged.
- :class:`WebhookAction`, :class:`LogAction`, :class:`EmitAction` and
  :class:`TriggerPipelineAction` only observe.  They get a read-only
  view of the batch and their failures are logged, never raised.

Each action type has exactly one handler; new action types are added
with :meth:`HookRunner.register_handler`.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Mapping, Sequence

import httpx

from datahub.pipeline.errors import HookActionError
from datahub.pipeline.events import PipelineEvent, PipelineEventEmitter, PipelineEventType
from datahub.pipeline.models import Record, StepKind, freeze_batch
from datahub.pipeline.resilience import RetryPolicy, retry_async
from datahub.pipeline.security import validate_url

logger = logging.getLogger(__name__)

DEFAULT_INTERCEPTOR_TIMEOUT = 5.0
DEFAULT_WEBHOOK_TIMEOUT = 30.0
DEFAULT_SIGNATURE_HEADER = "X-DataHub-Signature"


class HookStage(str, enum.Enum):
    """Named lifecycle points a pipeline can bind actions to."""

    BEFORE_EXTRACT = "beforeExtract"
    AFTER_EXTRACT = "afterExtract"
    BEFORE_TRANSFORM = "beforeTransform"
    AFTER_TRANSFORM = "afterTransform"
    BEFORE_VALIDATE = "beforeValidate"
    AFTER_VALIDATE = "afterValidate"
    BEFORE_ENRICH = "beforeEnrich"
    AFTER_ENRICH = "afterEnrich"
    BEFORE_ROUTE = "beforeRoute"
    AFTER_ROUTE = "afterRoute"
    BEFORE_LOAD = "beforeLoad"
    AFTER_LOAD = "afterLoad"
    PIPELINE_STARTED = "pipelineStarted"
    PIPELINE_COMPLETED = "pipelineCompleted"
    PIPELINE_FAILED = "pipelineFailed"
    ON_ERROR = "onError"
    ON_RETRY = "onRetry"
    ON_DEAD_LETTER = "onDeadLetter"

    @classmethod
    def parse(cls, value: str) -> HookStage:
        """Parse a stage from its camelCase value or enum name.

        Raises:
            ValueError: If *value* names no stage.
        """
        for stage in cls:
            if value in (stage.value, stage.name):
                return stage
        raise ValueError(f"Unknown hook stage: {value!r}")


_STEP_STAGES: dict[StepKind, tuple[HookStage, HookStage]] = {
    StepKind.EXTRACT: (HookStage.BEFORE_EXTRACT, HookStage.AFTER_EXTRACT),
    StepKind.TRANSFORM: (HookStage.BEFORE_TRANSFORM, HookStage.AFTER_TRANSFORM),
    StepKind.VALIDATE: (HookStage.BEFORE_VALIDATE, HookStage.AFTER_VALIDATE),
    StepKind.ENRICH: (HookStage.BEFORE_ENRICH, HookStage.AFTER_ENRICH),
    StepKind.ROUTE: (HookStage.BEFORE_ROUTE, HookStage.AFTER_ROUTE),
    StepKind.LOAD: (HookStage.BEFORE_LOAD, HookStage.AFTER_LOAD),
}


def step_stages(kind: StepKind) -> tuple[HookStage, HookStage] | None:
    """Return the (before, after) stages wrapping steps of *kind*, if any."""
    return _STEP_STAGES.get(kind)


@dataclass
class HookContext:
    """What an action knows about where it runs.

    Attributes:
        stage: Stage being executed.
        run_id: Current run.
        pipeline_name: Current pipeline.
        step_key: Step the stage wraps (empty for pipeline-level stages).
        data: Stage-specific extras (error message, retry attempt, ...).
    """

    stage: HookStage
    run_id: str = ""
    pipeline_name: str = ""
    step_key: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "runId": self.run_id,
            "pipeline": self.pipeline_name,
            "stepKey": self.step_key,
            "data": self.data,
        }


BatchFn = Callable[[list[Record], HookContext, dict[str, Any]], Any]


@dataclass
class HookAction:
    """Base for all hook actions."""

    type: ClassVar[str] = ""
    modifies_batch: ClassVar[bool] = False

    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.type.lower()


@dataclass
class InterceptorAction(HookAction):
    """Rewrite the batch with a Python callable.

    Attributes:
        fn: ``fn(records, context, args) -> records``; may be async.
        args: Extra arguments passed to *fn*.
        timeout: Seconds allowed per call.
        fail_on_error: Raise on failure instead of passing the batch on.
    """

    type: ClassVar[str] = "INTERCEPTOR"
    modifies_batch: ClassVar[bool] = True

    fn: BatchFn | None = None
    args: dict[str, Any] = field(default_factory=dict)
    timeout: float = DEFAULT_INTERCEPTOR_TIMEOUT
    fail_on_error: bool = True


@dataclass
class ScriptAction(HookAction):
    """Rewrite the batch with a named script from the :class:`ScriptRegistry`."""

    type: ClassVar[str] = "SCRIPT"
    modifies_batch: ClassVar[bool] = True

    script: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    fail_on_error: bool = True


@dataclass
class WebhookAction(HookAction):
    """POST the stage context and batch to a URL.

    With a *secret* the JSON body is signed as
    ``sha256=<hex HMAC-SHA256(secret, body)>`` in *signature_header*.
    With a *retry* policy failed deliveries (transport errors and
    non-2xx responses) are retried; otherwise one attempt is made.
    """

    type: ClassVar[str] = "WEBHOOK"

    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    secret: str | None = None
    signature_header: str = DEFAULT_SIGNATURE_HEADER
    retry: RetryPolicy | None = None


@dataclass
class LogAction(HookAction):
    """Write a log line describing the stage."""

    type: ClassVar[str] = "LOG"

    level: str = "info"
    message: str = ""


@dataclass
class EmitAction(HookAction):
    """Publish a named domain event."""

    type: ClassVar[str] = "EMIT"

    event: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class TriggerPipelineAction(HookAction):
    """Start another pipeline, optionally seeded with this batch."""

    type: ClassVar[str] = "TRIGGER_PIPELINE"

    pipeline: str = ""
    pass_records: bool = True


ACTION_TYPES: dict[str, type[HookAction]] = {
    cls.type: cls
    for cls in (
        InterceptorAction,
        ScriptAction,
        WebhookAction,
        LogAction,
        EmitAction,
        TriggerPipelineAction,
    )
}


class ScriptRegistry:
    """Named batch functions that definitions can reference.

    JSON definitions cannot carry code, so ``SCRIPT`` and
    ``INTERCEPTOR`` actions name a function registered here.
    """

    def __init__(self) -> None:
        self._scripts: dict[str, BatchFn] = {}

    def register(self, name: str, fn: BatchFn) -> None:
        self._scripts[name] = fn

    def script(self, name: str) -> Callable[[BatchFn], BatchFn]:
        """Decorator form of :meth:`register`."""
        def decorator(fn: BatchFn) -> BatchFn:
            self.register(name, fn)
            return fn

        return decorator

    def get(self, name: str) -> BatchFn | None:
        return self._scripts.get(name)

    def has(self, name: str) -> bool:
        return name in self._scripts

    @property
    def names(self) -> list[str]:
        return list(self._scripts)


def _flag(config: Mapping[str, Any], snake: str, camel: str, default: bool) -> bool:
    value = config.get(snake, config.get(camel, default))
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


def sign_payload(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` HMAC signature of a webhook body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def parse_action(config: Mapping[str, Any] | HookAction, scripts: ScriptRegistry | None = None) -> HookAction:
    """Build a :class:`HookAction` from a definition mapping.

    Instances are returned unchanged.

    Raises:
        ValueError: On an unknown action type or a missing reference.
    """
    if isinstance(config, HookAction):
        return config
    action_type = str(config.get("type", "")).upper().replace("-", "_")
    cls = ACTION_TYPES.get(action_type)
    if cls is None:
        raise ValueError(f"Unknown hook action type: {config.get('type')!r}")
    name = str(config.get("name", ""))
    fail_on_error = _flag(config, "fail_on_error", "failOnError", True)
    args = dict(config.get("args", {}))

    if cls is InterceptorAction:
        ref = config.get("interceptor") or config.get("script") or ""
        fn = scripts.get(ref) if scripts else None
        if fn is None:
            raise ValueError(f"Interceptor {ref!r} is not registered")
        timeout_ms = config.get("timeoutMs")
        timeout = (
            float(timeout_ms) / 1000.0
            if timeout_ms is not None
            else float(config.get("timeout", DEFAULT_INTERCEPTOR_TIMEOUT))
        )
        return InterceptorAction(
            name=name or ref, fn=fn, args=args, timeout=timeout, fail_on_error=fail_on_error
        )
    if cls is ScriptAction:
        script = str(config.get("script", ""))
        if not script:
            raise ValueError("SCRIPT action requires 'script'")
        timeout = config.get("timeout")
        return ScriptAction(
            name=name or script,
            script=script,
            args=args,
            timeout=float(timeout) if timeout is not None else None,
            fail_on_error=fail_on_error,
        )
    if cls is WebhookAction:
        retry = config.get("retry", config.get("retryConfig"))
        if retry is not None and not isinstance(retry, Mapping):
            raise ValueError("WEBHOOK 'retry' must be a mapping")
        secret = config.get("secret")
        return WebhookAction(
            name=name,
            url=str(config.get("url", "")),
            headers=dict(config.get("headers", {})),
            timeout=float(config.get("timeout", DEFAULT_WEBHOOK_TIMEOUT)),
            secret=str(secret) if secret else None,
            signature_header=str(
                config.get("signatureHeader", config.get("signature_header", DEFAULT_SIGNATURE_HEADER))
            ),
            retry=RetryPolicy.from_dict(dict(retry)) if retry is not None else None,
        )
    if cls is LogAction:
        return LogAction(
            name=name,
            level=str(config.get("level", "info")),
            message=str(config.get("message", "")),
        )
    if cls is EmitAction:
        return EmitAction(
            name=name,
            event=str(config.get("event", "")),
            data=dict(config.get("data", {})),
        )
    return TriggerPipelineAction(
        name=name,
        pipeline=str(config.get("pipeline", config.get("pipelineCode", ""))),
        pass_records=_flag(config, "pass_records", "passRecords", True),
    )


def compile_hooks(
    raw: Mapping[str, Sequence[Any]],
    scripts: ScriptRegistry | None = None,
) -> dict[HookStage, list[HookAction]]:
    """Parse a definition's ``hooks`` mapping into typed actions per stage."""
    compiled: dict[HookStage, list[HookAction]] = {}
    for stage_name, actions in raw.items():
        stage = HookStage.parse(stage_name)
        compiled[stage] = [parse_action(a, scripts) for a in actions]
    return compiled


ModifyingHandler = Callable[[Any, list[Record], HookContext], Awaitable[list[Record]]]
ObservingHandler = Callable[[Any, tuple[Mapping[str, Any], ...], HookContext], Awaitable[None]]
TriggerFn = Callable[[str, list[Record], HookContext], Awaitable[Any]]


class HookRunner:
    """Runs hook actions for a stage.

    Args:
        scripts: Registry resolving ``ScriptAction.script`` names.
        event_emitter: Receives ``EmitAction`` events.
        http: Client for ``WebhookAction`` calls; one is created per call
            when omitted.
        trigger: Starts another pipeline for ``TriggerPipelineAction``.
        allow_private_urls: Disable SSRF address checks on webhooks.
        sleep: Sleep used between webhook retries.
    """

    def __init__(
        self,
        scripts: ScriptRegistry | None = None,
        event_emitter: PipelineEventEmitter | None = None,
        http: httpx.AsyncClient | None = None,
        trigger: TriggerFn | None = None,
        allow_private_urls: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.scripts = scripts or ScriptRegistry()
        self._sleep = sleep
        self._event_emitter = event_emitter
        self._http = http
        self._trigger = trigger
        self._allow_private_urls = allow_private_urls
        self._handlers: dict[type[HookAction], Callable[..., Awaitable[Any]]] = {
            InterceptorAction: self._run_interceptor,
            ScriptAction: self._run_script,
            WebhookAction: self._run_webhook,
            LogAction: self._run_log,
            EmitAction: self._run_emit,
            TriggerPipelineAction: self._run_trigger,
        }

    def register_handler(
        self,
        action_type: type[HookAction],
        handler: Callable[..., Awaitable[Any]],
    ) -> None:
        """Register the handler for a custom action type.

        Handlers for batch-modifying types return the new batch; others
        return nothing.
        """
        self._handlers[action_type] = handler

    def set_trigger(self, trigger: TriggerFn | None) -> None:
        self._trigger = trigger

    async def run(
        self,
        actions: Sequence[HookAction],
        records: list[Record],
        context: HookContext,
    ) -> list[Record]:
        """Pull *records* through *actions* in order.

        Returns:
            The batch after the last modifying action.

        Raises:
            HookActionError: If a modifying action with
                ``fail_on_error`` fails.
        """
        batch = records
        for action in actions:
            handler = self._handlers.get(type(action))
            if handler is None:
                logger.warning(
                    "No handler for hook action type %s at %s",
                    type(action).__name__,
                    context.stage.value,
                )
                continue
            if action.modifies_batch:
                batch = await self._run_modifying(action, handler, batch, context)
            else:
                try:
                    await handler(action, freeze_batch(batch), context)
                except Exception:
                    logger.exception(
                        "Hook action '%s' failed at %s",
                        action.display_name,
                        context.stage.value,
                    )
        return batch

    async def _run_modifying(
        self,
        action: HookAction,
        handler: Callable[..., Awaitable[Any]],
        batch: list[Record],
        context: HookContext,
    ) -> list[Record]:
        try:
            result = await handler(action, copy.deepcopy(batch), context)
        except Exception as exc:
            if getattr(action, "fail_on_error", True):
                raise HookActionError(
                    f"Hook action '{action.display_name}' failed at "
                    f"{context.stage.value}: {exc}",
                    stage=context.stage.value,
                    action=action.display_name,
                ) from exc
            logger.exception(
                "Hook action '%s' failed at %s; keeping batch unchanged",
                action.display_name,
                context.stage.value,
            )
            return batch
        return result

    @staticmethod
    async def _call_batch_fn(
        fn: BatchFn,
        records: list[Record],
        context: HookContext,
        args: dict[str, Any],
        timeout: float | None,
    ) -> list[Record]:
        async def invoke() -> Any:
            outcome = fn(records, context, dict(args))
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            return outcome

        if timeout is not None:
            result = await asyncio.wait_for(invoke(), timeout=timeout)
        else:
            result = await invoke()
        if not isinstance(result, list):
            raise TypeError(
                f"Batch function must return a list of records, got {type(result).__name__}"
            )
        return result

    async def _run_interceptor(
        self, action: InterceptorAction, records: list[Record], context: HookContext
    ) -> list[Record]:
        if action.fn is None:
            raise ValueError("Interceptor has no function")
        return await self._call_batch_fn(
            action.fn, records, context, action.args, action.timeout
        )

    async def _run_script(
        self, action: ScriptAction, records: list[Record], context: HookContext
    ) -> list[Record]:
        fn = self.scripts.get(action.script)
        if fn is None:
            raise LookupError(f"Script '{action.script}' is not registered")
        return await self._call_batch_fn(fn, records, context, action.args, action.timeout)

    async def _run_webhook(
        self,
        action: WebhookAction,
        records: tuple[Mapping[str, Any], ...],
        context: HookContext,
    ) -> None:
        await validate_url(action.url, allow_private=self._allow_private_urls)
        payload = {
            **context.to_dict(),
            "timestamp": time.time(),
            "recordCount": len(records),
            "records": [dict(r) for r in records],
        }
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", **action.headers}
        if action.secret:
            headers[action.signature_header] = sign_payload(action.secret, body)

        async def deliver() -> None:
            if self._http is not None:
                response = await self._http.post(
                    action.url, content=body, headers=headers, timeout=action.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=action.timeout) as client:
                    response = await client.post(action.url, content=body, headers=headers)
            response.raise_for_status()

        if action.retry is None:
            await deliver()
        else:
            await retry_async(
                deliver, action.retry, retry_on=(httpx.HTTPError,), sleep=self._sleep
            )

    async def _run_log(
        self,
        action: LogAction,
        records: tuple[Mapping[str, Any], ...],
        context: HookContext,
    ) -> None:
        level = logging.getLevelName(action.level.upper())
        if not isinstance(level, int):
            level = logging.INFO
        logger.log(
            level,
            "[%s] %s step=%s records=%d %s",
            context.stage.value,
            context.pipeline_name,
            context.step_key or "-",
            len(records),
            action.message,
        )

    async def _run_emit(
        self,
        action: EmitAction,
        records: tuple[Mapping[str, Any], ...],
        context: HookContext,
    ) -> None:
        if self._event_emitter is None:
            return
        await self._event_emitter.emit(PipelineEvent(
            type=PipelineEventType.HOOK_EMIT,
            run_id=context.run_id,
            step_key=context.step_key,
            pipeline_name=context.pipeline_name,
            data={
                "event": action.event,
                "stage": context.stage.value,
                "recordCount": len(records),
                **action.data,
            },
        ))

    async def _run_trigger(
        self,
        action: TriggerPipelineAction,
        records: tuple[Mapping[str, Any], ...],
        context: HookContext,
    ) -> None:
        if self._trigger is None:
            logger.warning(
                "Hook at %s wants to trigger '%s' but no trigger is configured",
                context.stage.value,
                action.pipeline,
            )
            return
        seed = [copy.deepcopy(dict(r)) for r in records] if action.pass_records else []
        await self._trigger(action.pipeline, seed, context)
