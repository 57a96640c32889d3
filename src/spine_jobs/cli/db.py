"""
CLI: ``spine-jobs db`` — database management commands.
"""

from __future__ import annotations

import typer

from spine_jobs.cli.utils import console, handle_errors, load_settings, output
from spine_jobs.orm import create_jobs_engine, create_schema
from spine_jobs.store import store_errors

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Initialise database schema (create tables and indices)."""
    settings = load_settings(database)
    with handle_errors(), store_errors("db init"):
        engine = create_jobs_engine(settings.database_url, echo=settings.database_echo)
        try:
            create_schema(engine)
        finally:
            engine.dispose()

    if json_out:
        output({"database_url": settings.database_url, "initialized": True}, as_json=True)
    else:
        console.print(f"[green]Schema ready[/green] at {settings.database_url}")
