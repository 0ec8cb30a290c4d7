"""Per-run checkpoint state and the stores that persist it.

In memory a checkpoint is a tagged structure: an ``engine`` section the
scheduler and gate logic own, and an ``adapters`` section holding one
opaque entry per step key for incremental-sync state.  On the wire it is
a single flat JSON map in which engine entries carry reserved ``__``
prefixes, so older tooling that reads the flat form keeps working::

    {
        "orders-extract": {"cursor": "2024-01-01"},
        "__completed": ["orders-extract"],
        "__output:orders-extract": {"records": [...], "branches": null},
        "__gate:review": {"stepKey": "review", "pendingRecords": [...]},
        "__gateTimeout:review": {"stepKey": "review", "expiresAt": ...},
        "__gateApproved:review": {"approvedAt": ...},
        "__pipelineStats": {"errorCount": 0, "successCount": 10},
        "__run": {"status": "PAUSED", ...}
    }
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

RESERVED_PREFIX = "__"
COMPLETED_KEY = "__completed"
OUTPUT_PREFIX = "__output:"
GATE_PREFIX = "__gate:"
GATE_TIMEOUT_PREFIX = "__gateTimeout:"
GATE_APPROVED_PREFIX = "__gateApproved:"
STATS_KEY = "__pipelineStats"
RUN_KEY = "__run"


def is_reserved_key(key: str) -> bool:
    """Return ``True`` if *key* belongs to the engine namespace."""
    return key.startswith(RESERVED_PREFIX)


@dataclass
class EngineState:
    """Engine-owned checkpoint section.

    Attributes:
        completed: Step keys that finished, in completion order.
        outputs: Output of completed steps still awaiting consumers
            (leaf steps keep theirs until the run completes), as ``{"records": [...], "branches": {...} | None}``.
        gates: Pending gate snapshots keyed by step key.
        gate_timeouts: Gate expiry entries keyed by step key.
        gate_approvals: Approval markers keyed by step key.
        stats: Accumulated ``errorCount``/``successCount``, or ``None``
            before any step reported.
        run: Run metadata (status, failing step, error).
    """

    completed: list[str] = field(default_factory=list)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    gates: dict[str, dict[str, Any]] = field(default_factory=dict)
    gate_timeouts: dict[str, dict[str, Any]] = field(default_factory=dict)
    gate_approvals: dict[str, dict[str, Any]] = field(default_factory=dict)
    stats: dict[str, int] | None = None
    run: dict[str, Any] = field(default_factory=dict)

    def record_stats(self, ok: int, fail: int) -> None:
        """Add a step's counters to the accumulated pipeline stats."""
        if self.stats is None:
            self.stats = {"errorCount": 0, "successCount": 0}
        self.stats["successCount"] += ok
        self.stats["errorCount"] += fail


@dataclass
class RunCheckpoint:
    """Checkpoint for a single run.

    Attributes:
        engine: Engine-owned state.
        adapters: Adapter-owned state keyed by step key.
    """

    engine: EngineState = field(default_factory=EngineState)
    adapters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the flat, prefixed wire form.

        Returns:
            A JSON-compatible ``dict``.
        """
        data: dict[str, Any] = copy.deepcopy(self.adapters)
        eng = self.engine
        if eng.completed:
            data[COMPLETED_KEY] = list(eng.completed)
        for key, value in eng.outputs.items():
            data[f"{OUTPUT_PREFIX}{key}"] = copy.deepcopy(value)
        for key, value in eng.gates.items():
            data[f"{GATE_PREFIX}{key}"] = copy.deepcopy(value)
        for key, value in eng.gate_timeouts.items():
            data[f"{GATE_TIMEOUT_PREFIX}{key}"] = dict(value)
        for key, value in eng.gate_approvals.items():
            data[f"{GATE_APPROVED_PREFIX}{key}"] = dict(value)
        if eng.stats is not None:
            data[STATS_KEY] = dict(eng.stats)
        if eng.run:
            data[RUN_KEY] = dict(eng.run)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunCheckpoint:
        """Reconstruct a checkpoint from its flat wire form.

        Unknown reserved keys are dropped with a warning.

        Args:
            data: Mapping as produced by :meth:`to_dict`.

        Returns:
            A new :class:`RunCheckpoint`.
        """
        cp = cls()
        eng = cp.engine
        for key, value in data.items():
            if not is_reserved_key(key):
                cp.adapters[key] = copy.deepcopy(value)
            elif key == COMPLETED_KEY:
                eng.completed = list(value)
            elif key == STATS_KEY:
                eng.stats = {
                    "errorCount": int(value.get("errorCount", 0)),
                    "successCount": int(value.get("successCount", 0)),
                }
            elif key == RUN_KEY:
                eng.run = dict(value)
            elif key.startswith(GATE_TIMEOUT_PREFIX):
                eng.gate_timeouts[key[len(GATE_TIMEOUT_PREFIX):]] = dict(value)
            elif key.startswith(GATE_APPROVED_PREFIX):
                eng.gate_approvals[key[len(GATE_APPROVED_PREFIX):]] = dict(value)
            elif key.startswith(GATE_PREFIX):
                eng.gates[key[len(GATE_PREFIX):]] = copy.deepcopy(value)
            elif key.startswith(OUTPUT_PREFIX):
                eng.outputs[key[len(OUTPUT_PREFIX):]] = copy.deepcopy(value)
            else:
                logger.warning("Ignoring unknown reserved checkpoint key '%s'", key)
        return cp

    def clone(self) -> RunCheckpoint:
        return RunCheckpoint.from_dict(self.to_dict())


@runtime_checkable
class CheckpointStore(Protocol):
    """Durable per-run key-value state."""

    async def load(self, run_id: str) -> dict[str, Any]: ...

    async def save(self, run_id: str, data: dict[str, Any]) -> None: ...

    async def delete(self, run_id: str) -> None: ...

    async def list_run_ids(self) -> list[str]: ...


class InMemoryCheckpointStore:
    """Process-local store; each save keeps a deep copy."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def load(self, run_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._data.get(run_id, {}))

    async def save(self, run_id: str, data: dict[str, Any]) -> None:
        self._data[run_id] = copy.deepcopy(data)

    async def delete(self, run_id: str) -> None:
        self._data.pop(run_id, None)

    async def list_run_ids(self) -> list[str]:
        return list(self._data)


class FileCheckpointStore:
    """Stores one JSON file per run in *directory*.

    Files are named ``checkpoint_<run_id>.json`` and written through a
    temporary file so a crash mid-write keeps the previous checkpoint.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, run_id: str) -> Path:
        return self._directory / f"checkpoint_{run_id}.json"

    async def load(self, run_id: str) -> dict[str, Any]:
        path = self.path_for(run_id)
        if not path.exists():
            return {}
        text = await asyncio.to_thread(path.read_text)
        return json.loads(text)

    async def save(self, run_id: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(run_id), data)
        logger.debug("Checkpoint for run %s saved", run_id)

    @staticmethod
    def _write(path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str))
        tmp.replace(path)

    async def delete(self, run_id: str) -> None:
        self.path_for(run_id).unlink(missing_ok=True)

    async def list_run_ids(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return sorted(
            p.stem[len("checkpoint_"):]
            for p in self._directory.glob("checkpoint_*.json")
        )
