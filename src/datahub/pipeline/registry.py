"""Adapter registry and the context handed to adapters.

Each adapter implements :class:`StepAdapter`, a single ``run`` coroutine,
and is registered under a ``(kind, code)`` pair at startup.  The step
executors look adapters up here and never branch on adapter codes
themselves.  An unregistered code resolves to :class:`NoOpAdapter`,
which passes its input through untouched.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

import httpx

from datahub.pipeline.checkpoint import RunCheckpoint
from datahub.pipeline.models import (
    Record,
    RecordErrorCallback,
    Step,
    StepKind,
    StepResult,
)

logger = logging.getLogger(__name__)

SECRET_ENV_PREFIX = "DATAHUB_SECRET_"


@dataclass
class AdapterDefinition:
    """Declared contract of an adapter.

    Attributes:
        code: Adapter code, unique per kind.
        kind: Step kind the adapter serves.
        name: Display name.
        description: One-line description for catalogs.
        schema: Config fields as ``{name: {"type": ..., "required": bool}}``.
        network: Whether calls go over the network; network adapters are
            batched and run behind the retry policy and circuit breaker.
        url_field: Config field naming the target URL (circuit key host).
    """

    code: str
    kind: StepKind
    name: str = ""
    description: str = ""
    schema: dict[str, dict[str, Any]] = field(default_factory=dict)
    network: bool = False
    url_field: str = "url"

    def missing_config(self, config: Mapping[str, Any]) -> list[str]:
        """Return required schema fields absent from *config*."""
        return [
            name
            for name, spec in self.schema.items()
            if spec.get("required") and config.get(name) in (None, "")
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "name": self.name or self.code,
            "description": self.description,
            "schema": self.schema,
            "network": self.network,
        }


class SecretResolver:
    """Resolves secret references from a mapping, then the environment.

    ``resolve("crm-token")`` checks the mapping for ``crm-token`` and
    then the ``DATAHUB_SECRET_CRM_TOKEN`` environment variable.
    """

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def resolve(self, name: str, default: str | None = None) -> str | None:
        if name in self._secrets:
            return self._secrets[name]
        env_name = SECRET_ENV_PREFIX + name.upper().replace("-", "_").replace(".", "_")
        return os.environ.get(env_name, default)


class AdapterContext:
    """Run-scoped services exposed to an adapter.

    Args:
        run_id: Current run identifier.
        step: The step being executed.
        checkpoint: Run checkpoint; adapters only see their own entry.
        secrets: Secret resolver.
        connections: Named connection configs.
        dry_run: When set, adapters must not write to external systems.
        http: Shared HTTP client for network adapters.
        allow_private_urls: Disable address checks on outbound URLs.
    """

    def __init__(
        self,
        run_id: str,
        step: Step,
        checkpoint: RunCheckpoint,
        secrets: SecretResolver | None = None,
        connections: Mapping[str, dict[str, Any]] | None = None,
        dry_run: bool = False,
        http: httpx.AsyncClient | None = None,
        allow_private_urls: bool = False,
    ) -> None:
        self.run_id = run_id
        self.step = step
        self.dry_run = dry_run
        self.http = http
        self.allow_private_urls = allow_private_urls
        self._checkpoint = checkpoint
        self._secrets = secrets or SecretResolver()
        self._connections = dict(connections or {})
        self.logger = logging.LoggerAdapter(
            logging.getLogger(f"datahub.adapter.{step.adapter or step.kind.value.lower()}"),
            {"run_id": run_id, "step_key": step.key},
        )

    @property
    def step_key(self) -> str:
        return self.step.key

    def secret(self, name: str, default: str | None = None) -> str | None:
        """Resolve a secret by name."""
        return self._secrets.resolve(name, default)

    def connection(self, code: str) -> dict[str, Any] | None:
        """Return the connection config registered under *code*."""
        conn = self._connections.get(code)
        return dict(conn) if conn is not None else None

    def checkpoint_get(self, key: str, default: Any = None) -> Any:
        """Read *key* from this step's checkpoint entry."""
        entry = self._checkpoint.adapters.get(self.step.key)
        if not isinstance(entry, dict):
            return default
        return entry.get(key, default)

    def checkpoint_set(self, key: str, value: Any) -> None:
        """Write *key* into this step's checkpoint entry.

        The value is persisted with the next engine checkpoint save.
        """
        entry = self._checkpoint.adapters.get(self.step.key)
        if not isinstance(entry, dict):
            entry = {}
            self._checkpoint.adapters[self.step.key] = entry
        entry[key] = value


@runtime_checkable
class StepAdapter(Protocol):
    """Protocol that all adapters must satisfy.

    The meaning of the return value depends on the step kind:

    - EXTRACT / TRANSFORM / ENRICH / VALIDATE: the output batch, or a
      :class:`StepResult`.
    - ROUTE: ``{branch_name: records}``.
    - LOAD / EXPORT / FEED / SINK: a :class:`StepResult` for the chunk,
      or ``None`` when every record succeeded.

    Records the adapter cannot process must be reported through
    *on_record_error* and left out of the output.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> Any: ...


class NoOpAdapter:
    """Null-object adapter used for unregistered codes.

    Passes every input record through as ok.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        return StepResult(ok=len(records), records=list(records))


NOOP_ADAPTER = NoOpAdapter()


class AdapterRegistry:
    """Registry mapping ``(kind, code)`` to adapter implementations."""

    def __init__(self) -> None:
        self._adapters: dict[tuple[StepKind, str], tuple[AdapterDefinition, StepAdapter]] = {}
        self._warned: set[tuple[StepKind, str]] = set()

    def register(
        self,
        kind: StepKind,
        code: str,
        definition: AdapterDefinition | None,
        handler: StepAdapter,
    ) -> None:
        """Register *handler* under ``(kind, code)``.

        Args:
            kind: Step kind served.
            code: Adapter code.
            definition: Declared contract; a bare one is created if ``None``.
            handler: The adapter instance.

        Raises:
            TypeError: If *handler* does not implement :class:`StepAdapter`.
        """
        if not isinstance(handler, StepAdapter):
            raise TypeError(f"Adapter {code!r} does not implement StepAdapter")
        if definition is None:
            definition = AdapterDefinition(code=code, kind=kind)
        self._adapters[(kind, code)] = (definition, handler)

    def get(self, kind: StepKind, code: str) -> StepAdapter:
        """Return the adapter for ``(kind, code)``, or the no-op adapter."""
        entry = self._adapters.get((kind, code))
        if entry is not None:
            return entry[1]
        if (kind, code) not in self._warned:
            self._warned.add((kind, code))
            logger.warning(
                "No adapter registered for %s '%s'; passing records through",
                kind.value,
                code,
            )
        return NOOP_ADAPTER

    def definition(self, kind: StepKind, code: str) -> AdapterDefinition | None:
        entry = self._adapters.get((kind, code))
        return entry[0] if entry else None

    def has(self, kind: StepKind, code: str) -> bool:
        return (kind, code) in self._adapters

    def definitions(self, kind: StepKind | None = None) -> list[AdapterDefinition]:
        """Return registered definitions, optionally filtered by *kind*."""
        return [
            d for (k, _), (d, _) in self._adapters.items() if kind is None or k == kind
        ]
