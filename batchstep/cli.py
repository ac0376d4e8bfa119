"""Command line interface for running batchstep maintenance and workers."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import List, Optional

import typer

from batchstep import (
    REGISTRY,
    MaintenanceRunner,
    WorkChunkDispatcher,
    WorkChunkExecutor,
    WorkChunkService,
    get_repository,
    get_transport,
)
from batchstep.config import load_config
from batchstep.errors import NotFoundError, StorageUnavailableError

app = typer.Typer(help="CLI for batchstep jobs")

# Command groups
maintenance_app = typer.Typer(help="Commands for the maintenance runner")
instance_app = typer.Typer(help="Commands for inspecting job instances")
worker_app = typer.Typer(help="Commands for running step workers")

app.add_typer(maintenance_app, name="maintenance")
app.add_typer(instance_app, name="instance")
app.add_typer(worker_app, name="worker")

ModuleOption = typer.Option(
    None, "--module", "-m", help="Module that registers job definitions (repeatable)"
)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for batchstep output"),
) -> None:
    """batchstep CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _import_modules(modules: Optional[List[str]]) -> None:
    for name in modules or []:
        try:
            importlib.import_module(name)
        except ImportError as exc:
            typer.secho(f"Cannot import {name}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)


def _build_runner() -> MaintenanceRunner:
    config = load_config()
    repository = get_repository()
    service = WorkChunkService(repository, registry=REGISTRY)
    dispatcher = WorkChunkDispatcher(repository, get_transport())
    return MaintenanceRunner(
        service, dispatcher, REGISTRY, enabled=config.maintenance.enabled
    )


@maintenance_app.command("pass")
def maintenance_pass(modules: Optional[List[str]] = ModuleOption) -> None:
    """
    Run a single maintenance pass and print its counters.

    Wakes poll-waiting chunks whose deadline passed, advances gates whose
    current step is complete, finishes jobs and dispatches READY chunks.

    Example:
        batchstep maintenance pass --module myjobs.imports
        # Output: processed=3 woken=1 advanced=1 dispatched=4 completed=0 failed=0
    """
    _import_modules(modules)
    runner = _build_runner()
    try:
        result = asyncio.run(runner.run_maintenance_pass())
    except StorageUnavailableError as exc:
        typer.secho(f"Storage unavailable: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    typer.echo(
        f"processed={result.instances_processed} woken={result.chunks_woken} "
        f"advanced={result.gates_advanced} dispatched={result.chunks_dispatched} "
        f"completed={result.instances_completed} failed={result.instances_failed}"
    )
    for instance_id, message in result.errors.items():
        typer.secho(f"{instance_id}: {message}", fg=typer.colors.RED)
    if result.errors:
        raise typer.Exit(code=1)


@maintenance_app.command("run")
def maintenance_run(
    modules: Optional[List[str]] = ModuleOption,
    interval: Optional[float] = typer.Option(
        None, help="Seconds between passes (default: maintenance.interval_seconds)"
    ),
) -> None:
    """Run maintenance passes until interrupted."""
    _import_modules(modules)
    config = load_config()
    runner = _build_runner()
    every = interval if interval is not None else config.maintenance.interval_seconds
    typer.echo(f"Running maintenance every {every}s")
    try:
        asyncio.run(runner.run_forever(interval=every))
    except KeyboardInterrupt:
        runner.stop()


@instance_app.command("list")
def instance_list() -> None:
    """
    List all job instances with their current status.

    Returns:
        Tab-separated instance id, definition id, status and gated step,
        or "No job instances found"
    """
    repo = get_repository()
    instances = asyncio.run(repo.list_job_instances())
    if not instances:
        typer.echo("No job instances found")
        return
    for inst in instances:
        typer.echo(
            f"{inst.id}\t{inst.definition_id}\t{inst.status}\t"
            f"{inst.current_gated_step_id or '-'}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show a job instance and each of its work chunks."""
    repo = get_repository()
    inst = asyncio.run(repo.get_job_instance(instance_id))
    if inst is None:
        typer.echo("Job instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Job instance {inst.id}: {inst.status}")
    typer.echo(f"Definition: {inst.definition_id} v{inst.definition_version}")
    if inst.current_gated_step_id:
        typer.echo(f"Gated step: {inst.current_gated_step_id}")
    if inst.error_message:
        typer.echo(f"Error: {inst.error_message}")

    chunks = asyncio.run(repo.fetch_work_chunks(instance_id))
    for chunk in chunks:
        typer.echo(
            f"- {chunk.step_id} #{chunk.sequence} {chunk.id}: {chunk.status}"
            + (f" (next poll {chunk.next_poll_time})" if chunk.next_poll_time else "")
            + (f" [{chunk.error_message}]" if chunk.error_message else "")
        )


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    """Request cancellation of an active job instance."""
    service = WorkChunkService(get_repository())
    try:
        rows = asyncio.run(service.request_cancellation(instance_id))
    except NotFoundError:
        typer.echo("Job instance not found")
        raise typer.Exit(code=1)
    if rows:
        typer.echo(f"Job instance {instance_id} cancelled")
    else:
        typer.echo(f"Job instance {instance_id} is not active")


@worker_app.command("run")
def worker_run(
    definition_id: str,
    modules: Optional[List[str]] = ModuleOption,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker process for the specified job definition.

    Listens on the definition's topic and runs the registered step worker
    for every chunk announced there.

    Args:
        definition_id: Job definition whose chunks this worker processes
        modules: Modules that register the definition and its step workers
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        batchstep worker run nightly-export --module myjobs.export --lifespan 300
    """
    _import_modules(modules)
    if REGISTRY.get_definition(definition_id) is None:
        typer.secho(
            f"Job definition {definition_id} is not registered", fg=typer.colors.RED
        )
        known = ", ".join(d.definition_id for d in REGISTRY.definitions())
        typer.echo(f"Registered definitions: {known or 'none'}")
        raise typer.Exit(code=1)

    config = load_config()
    transport = get_transport()
    repository = get_repository()
    executor = WorkChunkExecutor(
        transport,
        WorkChunkService(repository, registry=REGISTRY),
        REGISTRY,
        definition_id,
        dispatcher=WorkChunkDispatcher(repository, transport),
        poll_backoff_base=config.maintenance.poll_backoff_base,
    )
    typer.echo(f"Starting worker for: {definition_id}")
    asyncio.run(executor.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
