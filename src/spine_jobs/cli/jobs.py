"""
CLI: ``spine-jobs jobs`` — enqueue, inspect, cancel and retry jobs.
"""

from __future__ import annotations

import json
from datetime import datetime

import typer

from spine_jobs.cli.utils import console, handle_errors, make_queue, output
from spine_jobs.errors import ValidationError

app = typer.Typer(no_args_is_help=True)

JOB_COLUMNS = ["id", "kind", "status", "priority", "lane", "run_at", "attempts", "max_attempts"]
EVENT_COLUMNS = ["id", "event_type", "timestamp", "worker_id", "data"]


def _parse_payload(raw: str | None) -> dict | None:
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"--payload is not valid JSON: {exc}", field="payload") from exc
    if not isinstance(payload, dict):
        raise ValidationError("--payload must be a JSON object", field="payload")
    return payload


def _parse_time(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"--run-at is not an ISO-8601 timestamp: {raw}", field="run_at") from exc


@app.command("enqueue")
def enqueue(
    owner: str = typer.Argument(..., help="Owner (tenant/user) id"),
    kind: str = typer.Argument(..., help="Handler kind"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="JSON object payload"),
    priority: int | None = typer.Option(None, "--priority", help="Higher runs first"),
    lane: str | None = typer.Option(None, "--lane", "-l"),
    run_at: str | None = typer.Option(None, "--run-at", help="ISO-8601 time before which the job won't run"),
    dedupe_key: str | None = typer.Option(None, "--dedupe-key"),
    max_attempts: int | None = typer.Option(None, "--max-attempts"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Enqueue a job (returns the existing job id when the dedupe key is in flight)."""
    with handle_errors():
        queue = make_queue(database)
        result = queue.enqueue(
            owner,
            kind,
            _parse_payload(payload),
            run_at=_parse_time(run_at),
            priority=priority,
            lane=lane,
            dedupe_key=dedupe_key,
            max_attempts=max_attempts,
        )

    if json_out:
        output(result, as_json=True)
    elif result.deduped:
        console.print(f"[yellow]Deduped[/yellow] → existing job {result.job_id}")
    else:
        console.print(f"[green]Enqueued[/green] {result.job_id}")


@app.command("show")
def show(
    job_id: str = typer.Argument(..., help="Job id"),
    owner: str | None = typer.Option(None, "--owner", "-o", help="Only if owned by"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one job."""
    with handle_errors():
        job = make_queue(database).get_job(job_id, owner)
    output(job, as_json=json_out, title=f"Job {job_id}")


@app.command("list")
def list_jobs(
    owner: str = typer.Argument(..., help="Owner id"),
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Repeatable; default queued/claimed/running"),
    limit: int = typer.Option(20, "--limit", "-n"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List upcoming jobs for an owner, soonest first."""
    with handle_errors():
        jobs = make_queue(database).list_upcoming(owner, status or None, limit)
    output(jobs, as_json=json_out, title="Upcoming Jobs", columns=JOB_COLUMNS)


@app.command("next")
def next_job(
    owner: str = typer.Argument(..., help="Owner id"),
    lane: list[str] | None = typer.Option(None, "--lane", "-l", help="Repeatable"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the job a worker would claim next (read-only)."""
    with handle_errors():
        job = make_queue(database).get_next(owner, lane or None)
    output(job, as_json=json_out, title="Next Job")


@app.command("events")
def events(
    job_id: str = typer.Argument(..., help="Job id"),
    owner: str | None = typer.Option(None, "--owner", "-o"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a job's event history."""
    with handle_errors():
        history = make_queue(database).get_events(job_id, owner)
    output(history, as_json=json_out, title=f"Events for {job_id}", columns=EVENT_COLUMNS)


@app.command("cancel")
def cancel(
    job_id: str = typer.Argument(..., help="Job id"),
    owner: str = typer.Argument(..., help="Owner id"),
    reason: str | None = typer.Option(None, "--reason", "-r"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Cancel a job (no-op for jobs that already finished)."""
    with handle_errors():
        job = make_queue(database).cancel(job_id, owner, reason)
    if json_out:
        output(job, as_json=True)
    else:
        console.print(f"Job {job_id} is [bold]{job.status.value}[/bold]")


@app.command("retry")
def retry(
    job_id: str = typer.Argument(..., help="Job id"),
    owner: str | None = typer.Option(None, "--owner", "-o"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Re-queue a dead-lettered job with its attempts reset."""
    with handle_errors():
        job = make_queue(database).retry(job_id, owner)
    if json_out:
        output(job, as_json=True)
    else:
        console.print(f"[green]Re-queued[/green] {job_id}")
