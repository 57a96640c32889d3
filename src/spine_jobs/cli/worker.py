"""
CLI: ``spine-jobs worker`` — run the worker loop, sweep leases, list the fleet.
"""

from __future__ import annotations

import importlib

import typer

from spine_jobs.cli.utils import (
    console,
    err_console,
    handle_errors,
    load_settings,
    make_queue,
    output,
)

app = typer.Typer(no_args_is_help=True)

WORKER_COLUMNS = ["worker_id", "alive", "last_seen_at", "hostname", "pid", "lanes"]


@app.command("start")
def start(
    lane: list[str] | None = typer.Option(None, "--lane", "-l", help="Repeatable; default from settings"),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", help="Handler threads"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),  # noqa: UP007
    owner: str | None = typer.Option(None, "--owner", help="Only claim this owner's jobs"),
    imports: list[str] | None = typer.Option(
        None, "--import", "-i", help="Module registering handlers (repeatable)"
    ),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Start a worker that claims and runs jobs until SIGINT/SIGTERM.

    Handlers are registered by importing the modules given with ``--import``.

    Example::

        spine-jobs worker start --import myapp.jobs --lane realtime --concurrency 4
    """
    from spine_jobs.worker import WorkerLoop

    for module in imports or []:
        try:
            importlib.import_module(module)
        except ImportError as exc:
            err_console.print(f"[bold red]Error[/bold red]: cannot import {module}: {exc}")
            raise typer.Exit(code=1) from exc

    with handle_errors():
        queue = make_queue(database, log_level=load_settings(database).log_level)
        loop = WorkerLoop(
            queue,
            lanes=lane or None,
            concurrency=concurrency,
            worker_id=worker_id,
            owner_id=owner,
        )

    kinds = ", ".join(queue.registry.list_kinds()) or "none"
    console.print(
        f"[bold green]Starting spine-jobs worker[/bold green] {loop.worker_id} "
        f"(lanes={','.join(loop.lanes)}, threads={loop.info.concurrency}, kinds={kinds})"
    )
    try:
        loop.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")


@app.command("sweep")
def sweep(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one abandoned-lease sweep."""
    with handle_errors():
        result = make_queue(database).sweep()
    if json_out:
        output(result, as_json=True)
        return
    console.print(
        f"reclaimable: [bold]{len(result.reclaimable)}[/bold]  "
        f"dead-lettered: [bold]{len(result.dead_lettered)}[/bold]"
    )


@app.command("list")
def list_workers(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List workers that have ever heartbeated, freshest first."""
    with handle_errors():
        workers = make_queue(database).list_workers()
    output(workers, as_json=json_out, title="Workers", columns=WORKER_COLUMNS)
