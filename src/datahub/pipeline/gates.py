"""Approval gates.

A GATE step either lets its batch through or pauses the run until an
operator (or the timeout sweep) approves it.

- ``MANUAL`` always pauses.
- ``THRESHOLD`` continues on its own while the accumulated error rate is
  below ``errorThresholdPercent``, and pauses otherwise.
- ``TIMEOUT`` pauses and records an expiry; :class:`GateTimeoutSweeper`
  approves the gate once it has passed.

A paused gate snapshots its full input under ``__gate:<key>``.  An
approval writes ``__gateApproved:<key>``; the next time the engine
visits the gate the marker is consumed and the snapshot is forwarded
without re-running anything upstream.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import smtplib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Iterable, Mapping, NamedTuple

import httpx

from datahub.pipeline.checkpoint import EngineState
from datahub.pipeline.events import PipelineEvent, PipelineEventType
from datahub.pipeline.executors import ExecutionContext
from datahub.pipeline.models import Record, RecordErrorCallback, Step, StepResult
from datahub.pipeline.security import validate_url

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_COUNT = 10
DEFAULT_SWEEP_INTERVAL = 30.0


class ApprovalType(str, enum.Enum):
    MANUAL = "MANUAL"
    THRESHOLD = "THRESHOLD"
    TIMEOUT = "TIMEOUT"


def to_iso(timestamp: float) -> str:
    """Format a UNIX epoch as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def parse_timestamp(value: Any) -> float:
    """Parse an ISO-8601 string or a number into a UNIX epoch.

    Raises:
        ValueError: If *value* is neither.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise ValueError(f"Not a timestamp: {value!r}")


@dataclass
class GateConfig:
    """Gate settings read from a GATE step's config.

    Attributes:
        approval_type: How the gate decides to pause.
        timeout_seconds: Expiry for TIMEOUT gates.
        error_threshold_percent: Error rate (0-100) at or above which a
            THRESHOLD gate pauses.
        notify_webhook: URL notified when the gate pauses.
        notify_email: Address notified when the gate pauses.
        preview_count: Records included in notifications.
    """

    approval_type: ApprovalType = ApprovalType.MANUAL
    timeout_seconds: float | None = None
    error_threshold_percent: float | None = None
    notify_webhook: str | None = None
    notify_email: str | None = None
    preview_count: int = DEFAULT_PREVIEW_COUNT

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> GateConfig:
        """Build from a config mapping (camelCase or snake_case keys).

        Raises:
            ValueError: On an unknown approval type or non-numeric values.
        """
        def pick(*names: str) -> Any:
            for name in names:
                if config.get(name) is not None:
                    return config[name]
            return None

        raw_type = pick("approvalType", "approval_type") or ApprovalType.MANUAL.value
        try:
            approval_type = ApprovalType(str(raw_type).upper())
        except ValueError:
            raise ValueError(f"Unknown approval type: {raw_type!r}") from None

        timeout = pick("timeoutSeconds", "timeout_seconds")
        threshold = pick("errorThresholdPercent", "error_threshold_percent", "thresholdPercent")
        preview = pick("previewCount", "preview_count")
        return cls(
            approval_type=approval_type,
            timeout_seconds=float(timeout) if timeout is not None else None,
            error_threshold_percent=float(threshold) if threshold is not None else None,
            notify_webhook=pick("notifyWebhook", "notify_webhook"),
            notify_email=pick("notifyEmail", "notify_email"),
            preview_count=int(preview) if preview is not None else DEFAULT_PREVIEW_COUNT,
        )

    @classmethod
    def from_step(cls, step: Step) -> GateConfig:
        return cls.from_dict(step.config)

    def problems(self) -> list[str]:
        """Return configuration problems, empty if the gate is usable."""
        issues: list[str] = []
        if self.approval_type == ApprovalType.TIMEOUT and not self.timeout_seconds:
            issues.append("TIMEOUT gate requires a positive timeoutSeconds")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            issues.append("timeoutSeconds must be > 0")
        if self.error_threshold_percent is not None and not (
            0 <= self.error_threshold_percent <= 100
        ):
            issues.append("errorThresholdPercent must be between 0 and 100")
        if self.preview_count < 0:
            issues.append("previewCount must be >= 0")
        return issues


def threshold_allows(config: GateConfig, stats: Mapping[str, int] | None) -> bool:
    """Decide whether a THRESHOLD gate continues without approval.

    No configured threshold or nothing processed yet continues; missing
    stats pause.
    """
    if config.error_threshold_percent is None:
        return True
    if stats is None:
        return False
    errors = int(stats.get("errorCount", 0))
    successes = int(stats.get("successCount", 0))
    total = errors + successes
    if total == 0:
        return True
    rate = errors / total * 100
    logger.info(
        "Threshold gate: error rate %.2f%% (threshold %.2f%%, %d errors, %d successes)",
        rate,
        config.error_threshold_percent,
        errors,
        successes,
    )
    return rate < config.error_threshold_percent


class GateNotifier:
    """Best-effort webhook and email notifications for paused gates.

    Deliveries run as background tasks; failures are logged and never
    reach the run.

    Args:
        http: Shared client; a short-lived one is created when omitted.
        smtp_host: SMTP relay host; email is skipped when unset.
        smtp_port: SMTP relay port.
        smtp_from: Sender address.
        timeout: Network timeout in seconds.
        allow_private_urls: Disable SSRF address checks.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        smtp_host: str | None = None,
        smtp_port: int = 25,
        smtp_from: str = "datahub@localhost",
        timeout: float = 30.0,
        allow_private_urls: bool = False,
    ) -> None:
        self._http = http
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._smtp_from = smtp_from
        self._timeout = timeout
        self._allow_private_urls = allow_private_urls
        self._tasks: set[asyncio.Task[None]] = set()

    @staticmethod
    def build_payload(
        step_key: str,
        config: GateConfig,
        records: list[Record],
        run_id: str = "",
        pipeline_name: str = "",
    ) -> dict[str, Any]:
        return {
            "event": "gate.paused",
            "runId": run_id,
            "pipeline": pipeline_name,
            "stepKey": step_key,
            "approvalType": config.approval_type.value,
            "recordCount": len(records),
            "preview": records[: config.preview_count],
            "timestamp": to_iso(time.time()),
        }

    def notify(
        self,
        run_id: str,
        pipeline_name: str,
        step_key: str,
        config: GateConfig,
        records: list[Record],
    ) -> None:
        """Schedule every configured notification for a paused gate."""
        payload = self.build_payload(step_key, config, records, run_id, pipeline_name)
        if config.notify_webhook:
            self._spawn(self._guard("webhook", self.send_webhook(config.notify_webhook, payload)))
        if config.notify_email:
            self._spawn(self._guard("email", self.send_email(config.notify_email, payload)))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, channel: str, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as exc:
            logger.warning("Gate %s notification failed: %s", channel, exc)

    async def drain(self) -> None:
        """Wait for in-flight notifications."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        await validate_url(url, allow_private=self._allow_private_urls)
        if self._http is not None:
            response = await self._http.post(url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()
        logger.debug("Gate webhook delivered to %s", url)

    async def send_email(self, to: str, payload: dict[str, Any]) -> None:
        if not self._smtp_host:
            logger.warning(
                "Gate '%s' wants to email %s but no SMTP host is configured",
                payload["stepKey"],
                to,
            )
            return
        message = EmailMessage()
        message["Subject"] = (
            f"[datahub] Approval required: {payload['pipeline'] or 'pipeline'} "
            f"/ {payload['stepKey']}"
        )
        message["From"] = self._smtp_from
        message["To"] = to
        message.set_content(
            f"Run {payload['runId']} is paused at gate '{payload['stepKey']}' "
            f"({payload['approvalType']}).\n"
            f"{payload['recordCount']} record(s) are waiting for approval.\n"
            f"Paused at {payload['timestamp']}.\n"
        )
        await asyncio.to_thread(self._deliver, message)

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._smtp_host or "", self._smtp_port, timeout=self._timeout) as smtp:
            smtp.send_message(message)


def consume_approval(state: EngineState, step_key: str) -> list[Record] | None:
    """Clear an approved gate's entries and return its snapshot.

    Returns ``None`` if no snapshot was stored.
    """
    state.gate_approvals.pop(step_key, None)
    state.gate_timeouts.pop(step_key, None)
    snapshot = state.gates.pop(step_key, None)
    if snapshot is None:
        return None
    return list(snapshot.get("pendingRecords", []))


class GateExecutor:
    """Executor for GATE steps.

    Args:
        notifier: Sends pause notifications; none are sent when omitted.
        clock: Wall clock used for ``pausedAt`` and ``expiresAt``.
    """

    def __init__(
        self,
        notifier: GateNotifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._notifier = notifier
        self._clock = clock

    async def execute(
        self,
        context: ExecutionContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        state = context.checkpoint.engine
        if step.key in state.gate_approvals:
            snapshot = consume_approval(state, step.key)
            approved = snapshot if snapshot is not None else list(records)
            logger.info(
                "Gate '%s' approved; forwarding %d record(s)", step.key, len(approved)
            )
            return StepResult(ok=len(approved), records=approved)

        if step.key in state.gates:
            logger.debug("Gate '%s' is still awaiting approval", step.key)
            return StepResult(paused=True)

        config = GateConfig.from_step(step)
        if config.approval_type == ApprovalType.THRESHOLD and threshold_allows(
            config, state.stats
        ):
            logger.info("Gate '%s' passed its error threshold", step.key)
            return StepResult(ok=len(records), records=list(records))

        now = self._clock()
        if config.approval_type == ApprovalType.TIMEOUT and config.timeout_seconds:
            state.gate_timeouts[step.key] = {
                "stepKey": step.key,
                "expiresAt": to_iso(now + config.timeout_seconds),
                "createdAt": to_iso(now),
            }

        state.gates[step.key] = {
            "stepKey": step.key,
            "approvalType": config.approval_type.value,
            "pendingRecordCount": len(records),
            "pendingRecords": list(records),
            "pausedAt": to_iso(now),
        }
        logger.info(
            "Gate '%s' paused (%s) with %d pending record(s)",
            step.key,
            config.approval_type.value,
            len(records),
        )
        await context.publish(
            PipelineEventType.GATE_PAUSED,
            step,
            approvalType=config.approval_type.value,
            recordCount=len(records),
        )
        if self._notifier is not None:
            self._notifier.notify(
                context.run_id, context.pipeline.name, step.key, config, list(records)
            )
        return StepResult(paused=True)


class PendingGateTimeout(NamedTuple):
    run_id: str
    pipeline_name: str
    step_key: str
    expires_at: Any
    created_at: Any


class GateTimeoutSweeper:
    """Periodically approves TIMEOUT gates whose expiry has passed.

    Args:
        pending: Returns the gate timeouts of every paused run.
        approve: ``approve(run_id, step_key)``; must be idempotent.
        emit: Receives ``GATE_TIMEOUT`` events.
        interval: Seconds between sweeps.
        clock: Wall clock.
    """

    def __init__(
        self,
        pending: Callable[[], Awaitable[Iterable[PendingGateTimeout]]],
        approve: Callable[[str, str], Awaitable[Any]],
        emit: Callable[[PipelineEvent], Awaitable[None]] | None = None,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._pending = pending
        self._approve = approve
        self._emit = emit
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> list[tuple[str, str]]:
        """Approve every expired gate.

        Returns:
            ``(run_id, step_key)`` for each gate approved.
        """
        approved: list[tuple[str, str]] = []
        for entry in await self._pending():
            try:
                expires = parse_timestamp(entry.expires_at)
            except ValueError:
                logger.warning(
                    "Run %s gate '%s' has an unreadable expiry %r",
                    entry.run_id,
                    entry.step_key,
                    entry.expires_at,
                )
                continue
            now = self._clock()
            if now < expires:
                continue
            try:
                await self._approve(entry.run_id, entry.step_key)
            except Exception:
                logger.exception(
                    "Timeout approval failed for run %s gate '%s'",
                    entry.run_id,
                    entry.step_key,
                )
                continue
            approved.append((entry.run_id, entry.step_key))
            try:
                created = parse_timestamp(entry.created_at)
            except ValueError:
                created = expires
            logger.info(
                "Gate '%s' of run %s approved by timeout (%.1fs late)",
                entry.step_key,
                entry.run_id,
                now - expires,
            )
            if self._emit is not None:
                await self._emit(PipelineEvent(
                    type=PipelineEventType.GATE_TIMEOUT,
                    run_id=entry.run_id,
                    step_key=entry.step_key,
                    pipeline_name=entry.pipeline_name,
                    data={
                        "intendedDelay": expires - created,
                        "actualDelay": now - created,
                        "expiresAt": entry.expires_at,
                    },
                ))
        return approved

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Gate timeout sweep failed")

    def start(self) -> None:
        """Start sweeping in the background."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the background sweep."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
