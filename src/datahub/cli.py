"""CLI entry point for the datahub pipeline engine.

Provides ``run``, ``validate``, ``resume`` and ``serve`` sub-commands
using Click and Rich for output formatting.

Usage::

    datahub run orders.dot --records seed.jsonl --checkpoint-dir .datahub
    datahub validate orders.json --strict
    datahub resume 3f2a... orders.dot --checkpoint-dir .datahub --approve review
    datahub serve --port 8080
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from datahub.pipeline.adapters import create_default_registry
from datahub.pipeline.errors import DataHubError, DefinitionError
from datahub.pipeline.models import Pipeline, Record, Run, RunStatus
from datahub.pipeline.parser import load_definition
from datahub.pipeline.reviewer import CLIReviewer, GateDecision, review_pending
from datahub.pipeline.server import PipelineServer
from datahub.pipeline.service import PipelineService
from datahub.pipeline.settings import EngineSettings
from datahub.pipeline.validator import (
    ValidationError,
    ValidationLevel,
    has_errors,
    validate_pipeline,
)

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_pipeline(path: str) -> Pipeline:
    try:
        return load_definition(path)
    except DefinitionError as exc:
        console.print(f"[red]Failed to parse pipeline:[/red] {exc}")
        raise SystemExit(1) from exc


def _load_records(path: str | None) -> list[Record]:
    """Read seed records from a JSON array or a JSON-lines file."""
    if path is None:
        return []
    text = Path(path).read_text(encoding="utf-8")
    try:
        if text.lstrip().startswith("["):
            records = json.loads(text)
        else:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as exc:
        console.print(f"[red]Invalid records file:[/red] {exc}")
        raise SystemExit(1) from exc
    if not all(isinstance(r, dict) for r in records):
        console.print("[red]Invalid records file:[/red] every record must be an object")
        raise SystemExit(1)
    return records


def _settings(checkpoint_dir: str | None) -> EngineSettings:
    try:
        settings = EngineSettings.from_env()
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise SystemExit(1) from exc
    if checkpoint_dir:
        settings = settings.model_copy(update={"checkpoint_dir": Path(checkpoint_dir)})
    return settings


def _print_findings(findings: list[ValidationError]) -> None:
    table = Table(title="Validation Results")
    table.add_column("Level", style="bold")
    table.add_column("Location")
    table.add_column("Message")
    for f in findings:
        level_style = "red" if f.level == ValidationLevel.ERROR else "yellow"
        location = f.step_key or ""
        if f.edge:
            location = f"{f.edge.source} -> {f.edge.target}"
        table.add_row(f"[{level_style}]{f.level.value}[/{level_style}]", location, f.message)
    console.print(table)


def _print_run(run: Run) -> None:
    """Print per-step counts and the run outcome."""
    table = Table(title=f"Run {run.id}")
    table.add_column("Step", style="cyan")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Paused")
    for key, result in run.step_results.items():
        table.add_row(key, str(result.ok), str(result.fail), "yes" if result.paused else "")
    if run.step_results:
        console.print(table)

    style = {
        RunStatus.COMPLETED: "bold green",
        RunStatus.PAUSED: "bold yellow",
    }.get(run.status, "bold red")
    console.print(f"[{style}]Run {run.status.value}[/{style}]")
    if run.failed_step:
        console.print(f"  failed step: {run.failed_step}")
    if run.error:
        console.print(f"  error: {run.error}")
    if run.errors:
        console.print(f"  {len(run.errors)} record error(s)")
    if run.status == RunStatus.PAUSED:
        console.print(f"  resume with: datahub resume {run.id} <definition> --approve <gate>")


async def _review_until_settled(service: PipelineService, run: Run) -> Run:
    reviewer = CLIReviewer(console=console)
    while run.status == RunStatus.PAUSED:
        decisions = await review_pending(service, run.id, reviewer)
        if not decisions or all(d == GateDecision.DEFER for d in decisions.values()):
            break
    return run


@click.group()
@click.version_option(package_name="datahub")
def main() -> None:
    """datahub: run data-integration pipelines with approval gates."""


@main.command()
@click.argument("definition", type=click.Path(exists=True))
@click.option("--records", "records_path", type=click.Path(exists=True), default=None,
              help="Seed records (JSON array or JSON lines).")
@click.option("--checkpoint-dir", type=click.Path(), default=None,
              help="Directory for checkpoint files (in-memory if omitted).")
@click.option("--interactive", "-i", is_flag=True, help="Review paused gates in the terminal.")
@click.option("--dry-run", is_flag=True, help="Skip deliveries to external systems.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(
    definition: str,
    records_path: str | None,
    checkpoint_dir: str | None,
    interactive: bool,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Execute a pipeline from a DOT or JSON definition."""
    _setup_logging(verbose)
    pipeline = _load_pipeline(definition)
    records = _load_records(records_path)
    settings = _settings(checkpoint_dir)

    async def _main() -> Run:
        service = PipelineService.from_settings(settings, dry_run=dry_run)
        findings = service.validate(pipeline)
        if has_errors(findings):
            console.print("[red]Pipeline validation failed:[/red]")
            for f in findings:
                console.print(f"  {f}")
            raise SystemExit(1)
        for f in findings:
            if f.level == ValidationLevel.WARNING:
                console.print(f"[yellow]Warning:[/yellow] {f}")

        console.print(f"[bold green]Running pipeline:[/bold green] {pipeline.name}")
        try:
            result = await service.start_run(pipeline, records, wait=True)
            if interactive:
                result = await _review_until_settled(service, result)
            return result
        finally:
            await service.close()

    result = asyncio.run(_main())
    _print_run(result)
    if result.status not in (RunStatus.COMPLETED, RunStatus.PAUSED):
        raise SystemExit(1)


@main.command()
@click.argument("definition", type=click.Path(exists=True))
@click.option("--strict", is_flag=True, help="Treat warnings as errors.")
def validate(definition: str, strict: bool) -> None:
    """Validate a pipeline definition without executing it."""
    pipeline = _load_pipeline(definition)
    findings = validate_pipeline(pipeline, create_default_registry())

    if not findings:
        console.print("[green]Pipeline is valid.[/green]")
        return

    _print_findings(findings)
    if has_errors(findings) or (strict and findings):
        raise SystemExit(1)


@main.command()
@click.argument("run_id")
@click.argument("definition", type=click.Path(exists=True))
@click.option("--checkpoint-dir", type=click.Path(exists=True, file_okay=False), required=True,
              help="Directory the run was checkpointed to.")
@click.option("--approve", "approvals", multiple=True, help="Approve this gate before resuming.")
@click.option("--interactive", "-i", is_flag=True, help="Review paused gates in the terminal.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def resume(
    run_id: str,
    definition: str,
    checkpoint_dir: str,
    approvals: tuple[str, ...],
    interactive: bool,
    verbose: bool,
) -> None:
    """Resume a paused or interrupted run from its checkpoint."""
    _setup_logging(verbose)
    pipeline = _load_pipeline(definition)
    settings = _settings(checkpoint_dir)

    async def _main() -> Run:
        service = PipelineService.from_settings(settings)
        try:
            restored = await service.restore_run(run_id, pipeline)
            if restored.status.is_terminal:
                console.print(f"[red]Run {run_id} is {restored.status.value}, nothing to resume[/red]")
                raise SystemExit(1)
            for step_key in approvals:
                await service.approve_gate(run_id, step_key, resume=False)
            console.print(f"[bold green]Resuming run:[/bold green] {run_id}")
            result = await service.resume_run(run_id, wait=True)
            if interactive:
                result = await _review_until_settled(service, result)
            return result
        except DataHubError as exc:
            console.print(f"[red]Resume failed:[/red] {exc}")
            raise SystemExit(1) from exc
        finally:
            await service.close()

    result = asyncio.run(_main())
    _print_run(result)
    if result.status not in (RunStatus.COMPLETED, RunStatus.PAUSED):
        raise SystemExit(1)


@main.command()
@click.option("--host", default=None, help="Bind address (DATAHUB_SERVER_HOST).")
@click.option("--port", type=int, default=None, help="Bind port (DATAHUB_SERVER_PORT).")
@click.option("--checkpoint-dir", type=click.Path(), default=None,
              help="Directory for checkpoint files (in-memory if omitted).")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def serve(host: str | None, port: int | None, checkpoint_dir: str | None, verbose: bool) -> None:
    """Serve the HTTP API."""
    _setup_logging(verbose)
    settings = _settings(checkpoint_dir)

    async def _main() -> None:
        server = PipelineServer(
            PipelineService.from_settings(settings),
            host=host or settings.server_host,
            port=port if port is not None else settings.server_port,
        )
        await server.serve_forever()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("[bold]Server stopped.[/bold]")


if __name__ == "__main__":
    main()
