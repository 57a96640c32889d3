"""
CLI: ``spine-jobs health`` — job counts per status and fleet liveness.
"""

from __future__ import annotations

import typer
from rich.table import Table

from spine_jobs.cli.utils import console, handle_errors, make_queue, output


def health(
    owner: str | None = typer.Option(None, "--owner", "-o", help="Only count this owner's jobs"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show job counts per status and whether any worker is alive."""
    with handle_errors():
        counts = make_queue(database).health_counts(owner)

    if json_out:
        output(counts, as_json=True)
        return

    table = Table(title="Job Health", pad_edge=False)
    table.add_column("status")
    table.add_column("count", justify="right")
    for status, count in counts.counts.items():
        table.add_row(status, str(count))
    console.print(table)

    if counts.worker_alive:
        console.print(f"[green]worker alive[/green] (last seen {counts.last_seen_at:%Y-%m-%d %H:%M:%S} UTC)")
    elif counts.last_seen_at is not None:
        console.print(f"[red]no live worker[/red] (last seen {counts.last_seen_at:%Y-%m-%d %H:%M:%S} UTC)")
    else:
        console.print("[red]no live worker[/red] (none ever seen)")
