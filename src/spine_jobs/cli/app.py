"""
Root Typer application for the spine-jobs CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="spine-jobs",
    help="spine-jobs — durable job queue and worker coordination.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from spine_jobs import __version__

        typer.echo(f"spine-jobs {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """spine-jobs CLI — enqueue and inspect jobs, run workers, check health."""


# ── Sub-command registration ─────────────────────────────────────────────

from spine_jobs.cli.db import app as db_app  # noqa: E402
from spine_jobs.cli.health import health  # noqa: E402
from spine_jobs.cli.jobs import app as jobs_app  # noqa: E402
from spine_jobs.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(jobs_app, name="jobs", help="Enqueue, inspect, cancel and retry jobs.")
app.add_typer(worker_app, name="worker", help="Run and inspect workers.")
app.command("health")(health)
