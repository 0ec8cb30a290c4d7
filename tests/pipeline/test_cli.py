"""Tests for the click command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from datahub.cli import main
from datahub.pipeline.checkpoint import RunCheckpoint

VALID_DOT = """\
digraph orders {
    extract [kind=EXTRACT, adapter=inline]
    load    [kind=LOAD, adapter=memory]
    extract -> load
}
"""

GATED_DOT = """\
digraph reviewed {
    extract [kind=EXTRACT, adapter=inline]
    review  [shape=hexagon, approvalType=MANUAL]
    load    [kind=LOAD, adapter=memory]
    extract -> review -> load
}
"""


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "orders.dot").write_text(VALID_DOT)
    (tmp_path / "reviewed.dot").write_text(GATED_DOT)
    (tmp_path / "seed.jsonl").write_text('{"id": 1}\n{"id": 2}\n')
    return tmp_path


class TestValidate:
    def test_valid(self, workdir: Path) -> None:
        result = CliRunner().invoke(main, ["validate", "orders.dot"])
        assert result.exit_code == 0
        assert "Pipeline is valid." in result.output

    def test_invalid(self, workdir: Path) -> None:
        (workdir / "loop.json").write_text(json.dumps({
            "name": "loop",
            "steps": [{"key": "a", "kind": "TRANSFORM"}],
            "edges": [{"from": "a", "to": "a"}],
        }))
        result = CliRunner().invoke(main, ["validate", "loop.json"])
        assert result.exit_code == 1
        assert "Validation Results" in result.output

    def test_unparseable(self, workdir: Path) -> None:
        (workdir / "broken.dot").write_text("digraph {{{{")
        result = CliRunner().invoke(main, ["validate", "broken.dot"])
        assert result.exit_code == 1
        assert "Failed to parse pipeline" in result.output


class TestRun:
    def test_completed(self, workdir: Path) -> None:
        result = CliRunner().invoke(main, ["run", "orders.dot", "--records", "seed.jsonl"])
        assert result.exit_code == 0, result.output
        assert "Running pipeline: orders" in result.output
        assert "Run COMPLETED" in result.output

    def test_bad_records_file(self, workdir: Path) -> None:
        (workdir / "bad.json").write_text("[1, 2]")
        result = CliRunner().invoke(main, ["run", "orders.dot", "--records", "bad.json"])
        assert result.exit_code == 1
        assert "every record must be an object" in result.output

    def test_bad_environment(self, workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATAHUB_BATCH_SIZE", "lots")
        result = CliRunner().invoke(main, ["run", "orders.dot"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestResume:
    def test_pause_then_resume(self, workdir: Path) -> None:
        runner = CliRunner()
        result = runner.invoke(
            main, ["run", "reviewed.dot", "--records", "seed.jsonl", "--checkpoint-dir", "ckpt"]
        )
        assert result.exit_code == 0, result.output
        assert "Run PAUSED" in result.output

        [checkpoint] = (workdir / "ckpt").glob("checkpoint_*.json")
        run_id = checkpoint.stem.removeprefix("checkpoint_")

        result = runner.invoke(
            main, ["resume", run_id, "reviewed.dot", "--checkpoint-dir", "ckpt", "--approve", "review"]
        )
        assert result.exit_code == 0, result.output
        assert "Run COMPLETED" in result.output

    def test_unknown_run(self, workdir: Path) -> None:
        (workdir / "ckpt").mkdir()
        result = CliRunner().invoke(main, ["resume", "ghost", "reviewed.dot", "--checkpoint-dir", "ckpt"])
        assert result.exit_code == 1
        assert "Resume failed" in result.output

    def test_resume_interrupted_run(self, workdir: Path) -> None:
        checkpoint = RunCheckpoint()
        checkpoint.engine.completed = ["extract"]
        checkpoint.engine.outputs = {"extract": {"records": [{"id": 1}], "branches": None}}
        checkpoint.engine.run = {"status": "RUNNING", "pipeline": "orders"}
        (workdir / "ckpt").mkdir()
        (workdir / "ckpt" / "checkpoint_crashed.json").write_text(json.dumps(checkpoint.to_dict()))

        result = CliRunner().invoke(main, ["resume", "crashed", "orders.dot", "--checkpoint-dir", "ckpt"])

        assert result.exit_code == 0, result.output
        assert "Run COMPLETED" in result.output

    def test_finished_run_not_resumed(self, workdir: Path) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["run", "orders.dot", "--checkpoint-dir", "ckpt"])
        assert result.exit_code == 0, result.output
        [checkpoint] = (workdir / "ckpt").glob("checkpoint_*.json")
        run_id = checkpoint.stem.removeprefix("checkpoint_")

        result = runner.invoke(main, ["resume", run_id, "orders.dot", "--checkpoint-dir", "ckpt"])

        assert result.exit_code == 1
        assert "nothing to resume" in result.output
