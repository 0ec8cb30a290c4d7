"""Pipeline definition loaders.

Two source formats produce the same :class:`Pipeline`:

**DOT** (parsed with ``pydot``)::

    digraph orders {
        timeout = "10m"
        extract [kind=EXTRACT, adapter="jsonl-file", path="orders.jsonl"]
        check   [kind=VALIDATE, adapter=schema, fields="{\\"id\\": {\\"required\\": true}}"]
        review  [shape=hexagon, approvalType=MANUAL]
        extract -> check -> review
    }

A node's ``kind`` attribute selects its step kind; without one the
GraphViz shape decides via :data:`SHAPE_KIND_MAP`.  Attributes that are
not step fields become adapter config, coerced to bool/int/float and
decoded from JSON when they look like an object or array.

**JSON** (or an equivalent mapping)::

    {
        "name": "orders",
        "steps": [{"key": "extract", "kind": "EXTRACT", "adapter": "inline",
                   "config": {"records": [...]}}],
        "edges": [{"from": "extract", "to": "load"}],
        "hooks": {"beforeLoad": [{"type": "LOG"}]}
    }

``type`` is accepted for ``kind``, ``config.adapterCode`` for
``adapter``, and ``source``/``target`` for ``from``/``to``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import pydot

from datahub.pipeline.errors import DefinitionError
from datahub.pipeline.models import Edge, Pipeline, Step, StepKind
from datahub.pipeline.resilience import RetryPolicy

SHAPE_KIND_MAP: dict[str, StepKind] = {
    "Mdiamond": StepKind.TRIGGER,
    "invhouse": StepKind.EXTRACT,
    "box": StepKind.TRANSFORM,
    "octagon": StepKind.VALIDATE,
    "component": StepKind.ENRICH,
    "diamond": StepKind.ROUTE,
    "cylinder": StepKind.LOAD,
    "house": StepKind.EXPORT,
    "parallelogram": StepKind.FEED,
    "Msquare": StepKind.SINK,
    "hexagon": StepKind.GATE,
}

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}

# Node attributes that map onto Step fields rather than adapter config.
_STEP_FIELDS = {
    "kind", "type", "shape", "adapter", "label", "strict", "tolerate_errors",
    "timeout", "batch_size", "retries", "retry_delay", "retry_max_delay",
    "retry_multiplier", "config",
}
_GRAPHVIZ_ONLY = {"color", "fillcolor", "style", "fontname", "fontsize", "width", "height", "pos"}


def parse_duration(value: str | int | float) -> float:
    """Parse ``'900s'``, ``'15m'``, ``'250ms'`` or a bare number into seconds.

    Raises:
        ValueError: On an unrecognised duration.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    for suffix, multiplier in sorted(_DURATION_UNITS.items(), key=lambda x: -len(x[0])):
        if text.endswith(suffix):
            return float(text[: -len(suffix)]) * multiplier
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"Invalid duration: {value!r}") from None


def coerce_value(raw: str) -> Any:
    """Coerce a raw DOT attribute string to its typed form."""
    stripped = raw.strip()
    if stripped[:1] in ("{", "[") and stripped[-1:] in ("}", "]"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return raw
    if stripped.lower() in ("true", "false"):
        return stripped.lower() == "true"
    try:
        return int(stripped)
    except ValueError:
        pass
    try:
        return float(stripped)
    except ValueError:
        pass
    return raw


def _batch_size(value: Any, key: str) -> int | None:
    if value is None:
        return None
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise DefinitionError(f"Step '{key}': batch_size must be an integer, got {value!r}") from None
    if size < 1:
        raise DefinitionError(f"Step '{key}': batch_size must be >= 1, got {size}")
    return size


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


# ---------------------------------------------------------------------------
# DOT
# ---------------------------------------------------------------------------


def parse_dot_file(path: str | Path) -> Pipeline:
    """Parse a DOT file at *path*.

    Raises:
        DefinitionError: If the file cannot be parsed.
        FileNotFoundError: If *path* does not exist.
    """
    path = Path(path)
    return parse_dot_string(path.read_text(encoding="utf-8"), name=path.stem)


def parse_dot_string(dot_content: str, name: str = "pipeline") -> Pipeline:
    """Parse DOT source into a :class:`Pipeline`.

    Args:
        dot_content: Raw DOT source text.
        name: Fallback pipeline name if the graph has none.

    Raises:
        DefinitionError: If the DOT content is invalid or describes an
            invalid step.
    """
    try:
        graphs = pydot.graph_from_dot_data(dot_content)
    except Exception as exc:
        raise DefinitionError(f"Invalid DOT content: {exc}") from exc
    if not graphs:
        raise DefinitionError("No graph found in DOT content")
    graph = graphs[0]

    node_defaults: dict[str, Any] = {}
    steps: dict[str, Step] = {}
    edges: list[Edge] = []
    _collect(graph, steps, edges, node_defaults)

    # Nodes only mentioned in edges take the default shape.
    for edge in edges:
        for key in (edge.source, edge.target):
            if key not in steps:
                steps[key] = _build_step(key, dict(node_defaults))

    attrs = _clean_attrs(graph.obj_dict.get("attributes", {}))
    metadata = {k: coerce_value(v) for k, v in attrs.items()}
    timeout_raw = metadata.pop("timeout", None)
    hooks = metadata.pop("hooks", {})
    if not isinstance(hooks, dict):
        raise DefinitionError("Graph attribute 'hooks' must be a JSON object")
    try:
        timeout = parse_duration(timeout_raw) if timeout_raw is not None else None
    except ValueError as exc:
        raise DefinitionError(f"Graph timeout: {exc}") from exc

    return Pipeline(
        name=_unquote(graph.get_name()) or name,
        steps=steps,
        edges=edges,
        hooks=hooks,
        timeout=timeout,
        metadata=metadata,
    )


def _collect(
    graph: pydot.Graph,
    steps: dict[str, Step],
    edges: list[Edge],
    node_defaults: dict[str, Any],
) -> None:
    """Collect nodes and edges from *graph* and its subgraphs."""
    defaults = dict(node_defaults)
    for dot_node in graph.get_nodes():
        if _unquote(dot_node.get_name()) == "node":
            defaults.update(_clean_attrs(dot_node.obj_dict.get("attributes", {})))
    node_defaults.update(defaults)

    for dot_node in graph.get_nodes():
        key = _unquote(dot_node.get_name())
        if key in ("node", "edge", "graph", ""):
            continue
        merged = dict(defaults)
        merged.update(_clean_attrs(dot_node.obj_dict.get("attributes", {})))
        steps[key] = _build_step(key, merged)

    for dot_edge in graph.get_edges():
        attrs = _clean_attrs(dot_edge.obj_dict.get("attributes", {}))
        branch = attrs.get("branch") or None
        edges.append(Edge(
            source=_unquote(str(dot_edge.get_source())),
            target=_unquote(str(dot_edge.get_destination())),
            branch=branch,
        ))

    for subgraph in graph.get_subgraphs():
        _collect(subgraph, steps, edges, dict(defaults))


def _build_step(key: str, attrs: dict[str, str]) -> Step:
    raw_kind = attrs.get("kind") or attrs.get("type")
    try:
        if raw_kind:
            kind = StepKind.parse(raw_kind)
        else:
            kind = SHAPE_KIND_MAP.get(attrs.get("shape", "box"), StepKind.TRANSFORM)
    except ValueError as exc:
        raise DefinitionError(f"Step '{key}': {exc}") from exc

    config: dict[str, Any] = {}
    if "config" in attrs:
        decoded = coerce_value(attrs["config"])
        if not isinstance(decoded, dict):
            raise DefinitionError(f"Step '{key}': config must be a JSON object")
        config.update(decoded)
    for name, value in attrs.items():
        if name not in _STEP_FIELDS and name not in _GRAPHVIZ_ONLY:
            config[name] = coerce_value(value)

    retry: RetryPolicy | None = None
    retry_keys = ("retries", "retry_delay", "retry_max_delay", "retry_multiplier")
    if any(k in attrs for k in retry_keys):
        retry = _retry_from({
            "retries": attrs.get("retries"),
            "initial_delay": attrs.get("retry_delay"),
            "max_delay": attrs.get("retry_max_delay"),
            "multiplier": attrs.get("retry_multiplier"),
        }, key)

    try:
        timeout = parse_duration(attrs["timeout"]) if "timeout" in attrs else None
        batch_size = _batch_size(attrs.get("batch_size"), key)
    except ValueError as exc:
        raise DefinitionError(f"Step '{key}': {exc}") from exc

    return Step(
        key=key,
        kind=kind,
        adapter=attrs.get("adapter", ""),
        config=config,
        label=attrs.get("label", key),
        strict=_to_bool(attrs.get("strict", "false")),
        tolerate_errors=_to_bool(attrs.get("tolerate_errors", "false")),
        retry=retry,
        batch_size=batch_size,
        timeout=timeout,
    )


def _clean_attrs(attrs: Mapping[str, Any]) -> dict[str, str]:
    """Strip surrounding quotes and DOT escapes from attribute values."""
    return {k: _unquote(str(v)) for k, v in attrs.items()}


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"')
    return value


# ---------------------------------------------------------------------------
# JSON / mappings
# ---------------------------------------------------------------------------


def _retry_from(data: Mapping[str, Any], key: str) -> RetryPolicy:
    try:
        cleaned = {
            k: int(v) if k == "retries" else parse_duration(v) if isinstance(v, str) else v
            for k, v in data.items()
            if v is not None
        }
        return RetryPolicy.from_dict(cleaned)
    except (TypeError, ValueError) as exc:
        raise DefinitionError(f"Step '{key}': invalid retry policy: {exc}") from exc


def _step_from_dict(data: Mapping[str, Any], fallback_key: str | None = None) -> Step:
    key = data.get("key") or fallback_key
    if not key:
        raise DefinitionError(f"Step is missing 'key': {dict(data)!r}")
    raw_kind = data.get("kind") or data.get("type")
    if not raw_kind:
        raise DefinitionError(f"Step '{key}' is missing 'kind'")
    try:
        kind = StepKind.parse(str(raw_kind))
    except ValueError as exc:
        raise DefinitionError(f"Step '{key}': {exc}") from exc

    config = dict(data.get("config") or {})
    adapter = data.get("adapter") or config.pop("adapterCode", "") or ""

    retry_raw = data.get("retry")
    if retry_raw is not None and not isinstance(retry_raw, Mapping):
        raise DefinitionError(f"Step '{key}': retry must be an object")
    retry = _retry_from(retry_raw, key) if retry_raw is not None else None

    timeout = data.get("timeout")
    timeout_ms = data.get("timeoutMs")
    batch_size = data.get("batch_size", data.get("batchSize"))
    try:
        return Step(
            key=str(key),
            kind=kind,
            adapter=str(adapter),
            config=config,
            label=str(data.get("label", key)),
            strict=_to_bool(data.get("strict", False)),
            tolerate_errors=_to_bool(
                data.get("tolerate_errors", data.get("tolerateErrors", False))
            ),
            retry=retry,
            batch_size=_batch_size(batch_size, str(key)),
            timeout=(
                float(timeout_ms) / 1000.0 if timeout_ms is not None
                else parse_duration(timeout) if timeout is not None
                else None
            ),
        )
    except ValueError as exc:
        raise DefinitionError(f"Step '{key}': {exc}") from exc


def parse_definition(data: Mapping[str, Any], name: str = "pipeline") -> Pipeline:
    """Build a :class:`Pipeline` from a JSON-compatible mapping.

    Raises:
        DefinitionError: If the mapping is malformed.
    """
    if not isinstance(data, Mapping):
        raise DefinitionError("Definition must be a JSON object")
    raw_steps = data.get("steps")
    if not raw_steps:
        raise DefinitionError("Definition has no steps")

    steps: dict[str, Step] = {}
    if isinstance(raw_steps, Mapping):
        items = [(k, v) for k, v in raw_steps.items()]
    else:
        items = [(None, v) for v in raw_steps]
    for fallback, raw in items:
        if not isinstance(raw, Mapping):
            raise DefinitionError(f"Step must be an object, got {raw!r}")
        step = _step_from_dict(raw, fallback)
        if step.key in steps:
            raise DefinitionError(f"Duplicate step key '{step.key}'")
        steps[step.key] = step

    edges: list[Edge] = []
    for raw in data.get("edges", []):
        source = raw.get("from", raw.get("source"))
        target = raw.get("to", raw.get("target"))
        if not source or not target:
            raise DefinitionError(f"Edge needs 'from' and 'to': {dict(raw)!r}")
        branch = raw.get("branch")
        edges.append(Edge(source=str(source), target=str(target), branch=branch or None))

    hooks = data.get("hooks") or {}
    if not isinstance(hooks, Mapping):
        raise DefinitionError("'hooks' must be an object of stage -> actions")

    timeout = data.get("timeout")
    try:
        pipeline_timeout = parse_duration(timeout) if timeout is not None else None
    except ValueError as exc:
        raise DefinitionError(f"Pipeline timeout: {exc}") from exc

    return Pipeline(
        name=str(data.get("name") or data.get("code") or name),
        steps=steps,
        edges=edges,
        hooks={str(k): list(v) for k, v in hooks.items()},
        timeout=pipeline_timeout,
        metadata=dict(data.get("metadata", {})),
    )


def parse_json_string(text: str, name: str = "pipeline") -> Pipeline:
    """Parse a JSON definition string.

    Raises:
        DefinitionError: If the text is not valid JSON or not a valid
            definition.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DefinitionError(f"Invalid JSON: {exc}") from exc
    return parse_definition(data, name=name)


def load_definition(path: str | Path) -> Pipeline:
    """Load a definition file, choosing the format by extension.

    ``.dot`` and ``.gv`` are DOT; anything else is parsed as JSON
    unless it starts with ``digraph``.

    Raises:
        DefinitionError: If the file cannot be parsed.
        FileNotFoundError: If *path* does not exist.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".dot", ".gv") or text.lstrip().startswith(("digraph", "strict")):
        return parse_dot_string(text, name=path.stem)
    return parse_json_string(text, name=path.stem)
