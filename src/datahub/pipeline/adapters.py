"""Reference adapters.

Small built-ins that let a pipeline run end to end without any external
system.  Each is registered into an :class:`AdapterRegistry` by
:func:`register_builtin_adapters`; real integrations register their own
adapters the same way.

Config keys accept snake_case and camelCase spellings.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import traceback
from pathlib import Path
from typing import Any, Mapping

import httpx

from datahub.pipeline.conditions import (
    ConditionError,
    evaluate,
    get_field,
    remove_field,
    set_field,
)
from datahub.pipeline.models import Record, RecordErrorCallback, Step, StepKind, StepResult
from datahub.pipeline.registry import AdapterContext, AdapterDefinition, AdapterRegistry
from datahub.pipeline.security import validate_url

logger = logging.getLogger(__name__)

_MISSING = object()


def _cfg(config: Mapping[str, Any], snake: str, camel: str | None = None, default: Any = None) -> Any:
    if snake in config:
        return config[snake]
    if camel is not None and camel in config:
        return config[camel]
    return default


# ---------------------------------------------------------------------------
# EXTRACT
# ---------------------------------------------------------------------------


class InlineExtractAdapter:
    """Emits ``config.records`` followed by the step input."""

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        inline = step.config.get("records", [])
        output: list[Record] = []
        for item in inline:
            if isinstance(item, dict):
                output.append(copy.deepcopy(item))
            else:
                on_record_error(step.key, f"Inline record is not an object: {item!r}", None)
        return output + list(records)


class JsonLinesExtractAdapter:
    """Reads records from a JSON-lines file.

    Config:
        path: File to read.
        incremental: Resume after the last line read by a previous run.
            The cursor lives in the step's checkpoint entry.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        path = Path(str(step.config["path"]))
        incremental = bool(step.config.get("incremental", False))
        start = int(context.checkpoint_get("line", 0)) if incremental else 0

        lines = (await asyncio.to_thread(path.read_text, encoding="utf-8")).splitlines()
        output: list[Record] = []
        for number, line in enumerate(lines[start:], start=start + 1):
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError as exc:
                on_record_error(
                    step.key,
                    f"Invalid JSON on line {number}: {exc.msg}",
                    {"line": number, "raw": line},
                )
                continue
            if not isinstance(value, dict):
                on_record_error(
                    step.key,
                    f"Line {number} is not a JSON object",
                    {"line": number, "raw": line},
                )
                continue
            output.append(value)

        if incremental:
            context.checkpoint_set("line", len(lines))
        context.logger.debug("Read %d record(s) from %s", len(output), path)
        return output


# ---------------------------------------------------------------------------
# TRANSFORM / ENRICH
# ---------------------------------------------------------------------------


class MapTransformAdapter:
    """Sets, renames and drops fields.

    Config:
        set: ``{path: value}`` assigned on every record.
        rename: ``{old_path: new_path}``.
        drop: List of paths to remove.

    Operations apply in the order rename, set, drop.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        assignments: Mapping[str, Any] = step.config.get("set", {})
        renames: Mapping[str, str] = step.config.get("rename", {})
        drops: list[str] = step.config.get("drop", [])

        output: list[Record] = []
        for record in records:
            result = copy.deepcopy(record)
            for source, target in renames.items():
                value = get_field(result, source, _MISSING)
                if value is not _MISSING:
                    remove_field(result, source)
                    set_field(result, target, value)
            for path, value in assignments.items():
                set_field(result, path, copy.deepcopy(value))
            for path in drops:
                remove_field(result, path)
            output.append(result)
        return output


class FilterTransformAdapter:
    """Keeps records matching ``config.when``.

    Records that do not match are dropped silently.  With
    ``config.reject`` they are reported as record errors instead.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        condition = _cfg(step.config, "when", "condition")
        reject = bool(step.config.get("reject", False))
        output: list[Record] = []
        for record in records:
            try:
                matched = evaluate(condition, record)
            except ConditionError as exc:
                on_record_error(step.key, str(exc), record)
                continue
            if matched:
                output.append(record)
            elif reject:
                on_record_error(step.key, "Record did not match filter", record)
        return output


class DefaultsEnrichAdapter:
    """Fills missing or null fields from ``config.defaults``."""

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        defaults: Mapping[str, Any] = step.config.get("defaults", {})
        output: list[Record] = []
        for record in records:
            result = copy.deepcopy(record)
            for path, value in defaults.items():
                if get_field(result, path) is None:
                    set_field(result, path, copy.deepcopy(value))
            output.append(result)
        return output


# ---------------------------------------------------------------------------
# VALIDATE
# ---------------------------------------------------------------------------

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def check_field(path: str, value: Any, rules: Mapping[str, Any]) -> list[str]:
    """Return the rule violations of *value* against *rules*."""
    if value is _MISSING or value is None:
        return [f"{path} is required"] if rules.get("required") else []

    problems: list[str] = []
    expected = rules.get("type")
    if expected:
        check = _TYPE_CHECKS.get(expected)
        if check is None:
            problems.append(f"{path}: unknown type {expected!r}")
        elif not check(value):
            return [f"{path} must be of type {expected}"]

    allowed = rules.get("enum")
    if allowed is not None and value not in allowed:
        problems.append(f"{path} must be one of {allowed}")

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if rules.get("min") is not None and value < rules["min"]:
            problems.append(f"{path} must be >= {rules['min']}")
        if rules.get("max") is not None and value > rules["max"]:
            problems.append(f"{path} must be <= {rules['max']}")

    if isinstance(value, (str, list)):
        min_length = _cfg(rules, "min_length", "minLength")
        max_length = _cfg(rules, "max_length", "maxLength")
        if min_length is not None and len(value) < min_length:
            problems.append(f"{path} must have length >= {min_length}")
        if max_length is not None and len(value) > max_length:
            problems.append(f"{path} must have length <= {max_length}")

    pattern = rules.get("pattern")
    if pattern and isinstance(value, str) and re.search(pattern, value) is None:
        problems.append(f"{path} must match {pattern}")
    return problems


class SchemaValidateAdapter:
    """Validates records against ``config.fields``.

    ``fields`` maps a dotted path to its rules: ``required``, ``type``,
    ``enum``, ``min``, ``max``, ``minLength``, ``maxLength``,
    ``pattern``.  Invalid records are reported with every violation and
    dropped.
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> list[Record]:
        fields: Mapping[str, Mapping[str, Any]] = step.config.get("fields", {})
        output: list[Record] = []
        for record in records:
            problems: list[str] = []
            for path, rules in fields.items():
                problems.extend(check_field(path, get_field(record, path, _MISSING), rules))
            if problems:
                on_record_error(step.key, "; ".join(problems), record)
            else:
                output.append(record)
        return output


# ---------------------------------------------------------------------------
# ROUTE
# ---------------------------------------------------------------------------


class BranchRouteAdapter:
    """Splits records into named branches.

    Config:
        branches: ``[{"name": ..., "when": condition}, ...]``.  A record
            lands in every branch whose condition it matches.
        default: Name of the branch for unmatched records
            (``"default"``).
    """

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> dict[str, list[Record]]:
        branches: list[Mapping[str, Any]] = step.config.get("branches", [])
        default_name = str(step.config.get("default", "default"))

        result: dict[str, list[Record]] = {str(b["name"]): [] for b in branches}
        unmatched: list[Record] = []
        for record in records:
            matched = False
            for branch in branches:
                try:
                    hit = evaluate(branch.get("when"), record)
                except ConditionError as exc:
                    on_record_error(step.key, str(exc), record)
                    matched = True
                    break
                if hit:
                    result[str(branch["name"])].append(record)
                    matched = True
            if not matched:
                unmatched.append(record)
        result.setdefault(default_name, []).extend(unmatched)
        return result


# ---------------------------------------------------------------------------
# LOAD / EXPORT / FEED / SINK
# ---------------------------------------------------------------------------


class WebhookDeliveryAdapter:
    """POSTs each chunk as ``{"records": [...]}`` to ``config.url``.

    Config:
        url: Target URL (SSRF-checked).
        method: HTTP method, ``POST`` by default.
        headers: Extra request headers.
        auth_secret: Secret name resolved to a bearer token.
        timeout: Request timeout in seconds.

    Non-2xx responses raise, so the chunk is retried and finally
    reported as failed.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> None:
        url = str(step.config["url"])
        await validate_url(url, allow_private=context.allow_private_urls)
        if context.dry_run:
            context.logger.info("Dry run: skipping delivery of %d record(s) to %s", len(records), url)
            return None

        method = str(step.config.get("method", "POST")).upper()
        headers = dict(step.config.get("headers", {}))
        secret_name = _cfg(step.config, "auth_secret", "authSecret")
        if secret_name:
            token = context.secret(str(secret_name))
            if token:
                headers["Authorization"] = f"Bearer {token}"
        timeout = float(step.config.get("timeout", self._timeout))
        body = {"records": records}

        if context.http is not None:
            response = await context.http.request(
                method, url, json=body, headers=headers, timeout=timeout
            )
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, url, json=body, headers=headers)
        response.raise_for_status()
        context.logger.debug("Delivered %d record(s) to %s", len(records), url)
        return None


class JsonLinesWriterAdapter:
    """Appends each record as one JSON line to ``config.path``."""

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        path = Path(str(step.config["path"]))
        lines: list[str] = []
        written: list[Record] = []
        for record in records:
            try:
                lines.append(json.dumps(record, ensure_ascii=False))
            except (TypeError, ValueError) as exc:
                on_record_error(
                    step.key, f"Record is not JSON-serializable: {exc}", record,
                    traceback.format_exc(),
                )
                continue
            written.append(record)
        if lines and not context.dry_run:
            await asyncio.to_thread(self._append, path, lines)
        return StepResult(ok=len(written), records=written)

    @staticmethod
    def _append(path: Path, lines: list[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(line + "\n")


class MemoryStore:
    """In-process record collections, keyed by collection name."""

    def __init__(self) -> None:
        self._collections: dict[str, list[Record]] = {}

    def collection(self, name: str) -> list[Record]:
        return self._collections.setdefault(name, [])

    def upsert(self, name: str, record: Record, key: str | None) -> None:
        items = self.collection(name)
        if key is not None:
            ident = get_field(record, key)
            for index, existing in enumerate(items):
                if get_field(existing, key) == ident:
                    items[index] = record
                    return
        items.append(record)

    def clear(self) -> None:
        self._collections.clear()


class MemoryLoadAdapter:
    """Loads records into a :class:`MemoryStore` collection.

    Config:
        collection: Target collection (``"default"``).
        key: Field used to upsert instead of append.
        required: Fields every record must carry; records missing one
            are reported and skipped.
    """

    def __init__(self, store: MemoryStore | None = None) -> None:
        self.store = store or MemoryStore()

    async def run(
        self,
        context: AdapterContext,
        step: Step,
        records: list[Record],
        on_record_error: RecordErrorCallback,
    ) -> StepResult:
        collection = str(step.config.get("collection", "default"))
        key = step.config.get("key")
        required: list[str] = step.config.get("required", [])

        loaded: list[Record] = []
        for record in records:
            missing = [f for f in required if get_field(record, f) in (None, "")]
            if missing:
                on_record_error(
                    step.key, f"Missing required field(s): {', '.join(missing)}", record
                )
                continue
            if not context.dry_run:
                self.store.upsert(collection, copy.deepcopy(record), key)
            loaded.append(record)
        return StepResult(ok=len(loaded), records=loaded)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

_DELIVERY_KINDS = (StepKind.LOAD, StepKind.EXPORT, StepKind.FEED, StepKind.SINK)


def register_builtin_adapters(
    registry: AdapterRegistry,
    memory_store: MemoryStore | None = None,
    http_timeout: float = 30.0,
) -> None:
    """Register every reference adapter into *registry*."""
    registry.register(
        StepKind.EXTRACT, "inline",
        AdapterDefinition(
            "inline", StepKind.EXTRACT, "Inline records",
            "Records from config.records plus the step input",
            schema={"records": {"type": "array"}},
        ),
        InlineExtractAdapter(),
    )
    registry.register(
        StepKind.EXTRACT, "jsonl-file",
        AdapterDefinition(
            "jsonl-file", StepKind.EXTRACT, "JSON-lines file",
            "Reads one record per line",
            schema={"path": {"type": "string", "required": True},
                    "incremental": {"type": "boolean"}},
        ),
        JsonLinesExtractAdapter(),
    )
    registry.register(
        StepKind.TRANSFORM, "map",
        AdapterDefinition(
            "map", StepKind.TRANSFORM, "Map fields", "Set, rename and drop fields",
            schema={"set": {"type": "object"}, "rename": {"type": "object"},
                    "drop": {"type": "array"}},
        ),
        MapTransformAdapter(),
    )
    registry.register(
        StepKind.TRANSFORM, "filter",
        AdapterDefinition(
            "filter", StepKind.TRANSFORM, "Filter", "Keep records matching a condition",
            schema={"when": {"type": "condition"}, "reject": {"type": "boolean"}},
        ),
        FilterTransformAdapter(),
    )
    registry.register(
        StepKind.VALIDATE, "schema",
        AdapterDefinition(
            "schema", StepKind.VALIDATE, "Schema validation", "Per-field rules",
            schema={"fields": {"type": "object", "required": True}},
        ),
        SchemaValidateAdapter(),
    )
    registry.register(
        StepKind.ENRICH, "defaults",
        AdapterDefinition(
            "defaults", StepKind.ENRICH, "Defaults", "Fill missing fields",
            schema={"defaults": {"type": "object", "required": True}},
        ),
        DefaultsEnrichAdapter(),
    )
    registry.register(
        StepKind.ROUTE, "branch",
        AdapterDefinition(
            "branch", StepKind.ROUTE, "Branch", "Named branches with conditions",
            schema={"branches": {"type": "array", "required": True},
                    "default": {"type": "string"}},
        ),
        BranchRouteAdapter(),
    )

    webhook = WebhookDeliveryAdapter(timeout=http_timeout)
    for kind in _DELIVERY_KINDS:
        registry.register(
            kind, "webhook",
            AdapterDefinition(
                "webhook", kind, "Webhook", "POST each chunk as JSON",
                schema={"url": {"type": "string", "required": True},
                        "method": {"type": "string"},
                        "headers": {"type": "object"},
                        "auth_secret": {"type": "string"}},
                network=True,
            ),
            webhook,
        )

    writer = JsonLinesWriterAdapter()
    for kind in (StepKind.EXPORT, StepKind.SINK):
        registry.register(
            kind, "jsonl-file",
            AdapterDefinition(
                "jsonl-file", kind, "JSON-lines file", "Append one record per line",
                schema={"path": {"type": "string", "required": True}},
            ),
            writer,
        )

    registry.register(
        StepKind.LOAD, "memory",
        AdapterDefinition(
            "memory", StepKind.LOAD, "In-memory store", "Upsert into a named collection",
            schema={"collection": {"type": "string"}, "key": {"type": "string"},
                    "required": {"type": "array"}},
        ),
        MemoryLoadAdapter(memory_store),
    )


def create_default_registry(
    memory_store: MemoryStore | None = None,
    http_timeout: float = 30.0,
) -> AdapterRegistry:
    """Create an :class:`AdapterRegistry` with the reference adapters."""
    registry = AdapterRegistry()
    register_builtin_adapters(registry, memory_store=memory_store, http_timeout=http_timeout)
    return registry
