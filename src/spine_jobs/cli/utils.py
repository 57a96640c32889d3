"""
CLI utility helpers — queue construction, error reporting and output formatting.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from spine_jobs.errors import JobQueueError
from spine_jobs.logging import configure_logging
from spine_jobs.queue import JobQueue
from spine_jobs.settings import JobQueueSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Queue helper ─────────────────────────────────────────────────────────


def load_settings(database: str | None = None) -> JobQueueSettings:
    """Settings from the environment, with ``--database`` taking precedence."""
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"database_url": database})
    return settings


def make_queue(database: str | None = None, *, log_level: str = "WARNING") -> JobQueue:
    """Build a :class:`JobQueue` for a CLI command (creates tables if missing)."""
    settings = load_settings(database)
    setup_logging(settings, level=log_level)
    return JobQueue.from_settings(settings)


def setup_logging(settings: JobQueueSettings, *, level: str | None = None) -> None:
    """Log to stderr so ``--json`` output on stdout stays parseable."""
    configure_logging(
        level=level or settings.log_level,
        json_format=settings.json_logs,
        service=settings.service_name,
        stream=sys.stderr,
        cache_loggers=False,
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print library errors in red and exit with code 1."""
    try:
        yield
    except JobQueueError as err:
        err_console.print(
            f"[bold red]Error[/bold red] ({err.category.value}): {escape(err.message)}"
        )
        raise typer.Exit(code=1) from err


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert a model with ``to_dict`` / pydantic model / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(
    data: Any,
    *,
    as_json: bool = False,
    title: str = "",
    columns: list[str] | None = None,
) -> None:
    """Render one object or a list of objects to the terminal."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list | tuple) else (
            _to_dict(data) if data is not None else None
        )
        console.print_json(json.dumps(payload, default=str))
        return

    if data is None:
        console.print("[dim]Nothing found.[/dim]")
        return

    if isinstance(data, list | tuple):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(list(data), title=title, columns=columns)
    else:
        _print_dict(_to_dict(data), title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of models/dicts as a Rich table."""
    rows = [_to_dict(item) for item in items]
    cols = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in cols:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if row.get(c) is None else escape(str(row.get(c))) for c in cols))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {escape(str(v))}")
