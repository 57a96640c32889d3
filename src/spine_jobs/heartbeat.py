"""Heartbeat monitor - worker liveness and abandoned-lease sweeps.

Two kinds of heartbeat keep the fleet honest:

- **Job heartbeats** refresh ``jobs.heartbeat_at`` for every job a worker
  holds.  :class:`LeaseKeeper` pumps them from a background thread while
  handlers run; a refused heartbeat flips the job's cancel flag so the
  handler can stop cooperatively.
- **Worker heartbeats** upsert one ``worker_heartbeats`` row per process
  (hostname, pid, lanes, meta).  HealthCounts derives ``worker_alive`` from
  the freshest row.

:meth:`HeartbeatMonitor.sweep` finds jobs whose lease expired.  Those with
attempts left are simply claimable again (Claim treats them exactly like
queued work).  Those that already used ``max_attempts`` would be stranded,
so the sweep dead-letters them with reason ``lease_expired``.

Example:
    >>> monitor = HeartbeatMonitor(store, alive_threshold_seconds=60)
    >>> monitor.beat("worker-1", hostname="box-1", lanes=["realtime"])
    >>> monitor.worker_alive()
    True
    >>> monitor.sweep().to_dict()
    {'checked_at': '…', 'reclaimable': [], 'dead_lettered': []}
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite

from .claim import LeaseManager
from .errors import ErrorCategory
from .logging import get_logger
from .models import (
    ACTIVE_STATUSES,
    Job,
    JobEventType,
    JobStatus,
    WorkerHeartbeat,
    validate_job_transition,
)
from .orm.tables import jobs_table, worker_heartbeats_table
from .store import JobStore

logger = get_logger(__name__)

_c = jobs_table.c
_w = worker_heartbeats_table.c
_ACTIVE = sorted(s.value for s in ACTIVE_STATUSES)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


@dataclass
class SweepResult:
    """Outcome of one abandoned-lease sweep."""

    checked_at: datetime
    reclaimable: list[str] = field(default_factory=list)
    dead_lettered: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "reclaimable": self.reclaimable,
            "dead_lettered": self.dead_lettered,
        }


class HeartbeatMonitor:
    """Worker liveness rows and stale-claim detection.

    Args:
        store: Job store (shares engine, clock and lease timeout)
        alive_threshold_seconds: A worker seen more recently than this is alive
    """

    def __init__(self, store: JobStore, *, alive_threshold_seconds: float = 60.0):
        self._store = store
        self.alive_threshold_seconds = alive_threshold_seconds

    # ── Worker rows ──────────────────────────────────────────────

    def beat(
        self,
        worker_id: str,
        *,
        hostname: str | None = None,
        pid: int | None = None,
        lanes: list[str] | None = None,
        meta: dict[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> None:
        """Upsert the worker's liveness row."""
        store = self._store
        now = store.now()
        values = {
            "worker_id": worker_id,
            "last_seen_at": now,
            "started_at": started_at or now,
            "hostname": hostname,
            "pid": pid,
            "lanes": lanes or [],
            "meta": meta or {},
        }
        refresh = {k: v for k, v in values.items() if k not in ("worker_id", "started_at")}

        dialect_insert = _UPSERT_DIALECTS.get(store.engine.dialect.name)
        with store.transaction("worker_heartbeat") as conn:
            if dialect_insert is not None:
                stmt = dialect_insert(worker_heartbeats_table).values(**values)
                conn.execute(stmt.on_conflict_do_update(index_elements=["worker_id"], set_=refresh))
                return
            # the row is only ever written by its own worker
            result = conn.execute(
                update(worker_heartbeats_table).where(_w.worker_id == worker_id).values(**refresh)
            )
            if result.rowcount == 0:
                conn.execute(worker_heartbeats_table.insert().values(**values))

    def list_workers(self) -> list[WorkerHeartbeat]:
        """Every known worker, most recently seen first, with ``alive`` set."""
        with self._store.transaction("list_workers") as conn:
            rows = conn.execute(
                select(worker_heartbeats_table).order_by(_w.last_seen_at.desc())
            ).all()
        now = self._store.now()
        workers = [self._row_to_worker(row) for row in rows]
        for worker in workers:
            worker.alive = worker.is_alive(now, self.alive_threshold_seconds)
        return workers

    def latest_heartbeat(self) -> WorkerHeartbeat | None:
        with self._store.transaction("latest_heartbeat") as conn:
            row = conn.execute(
                select(worker_heartbeats_table).order_by(_w.last_seen_at.desc()).limit(1)
            ).first()
        return self._row_to_worker(row) if row is not None else None

    def worker_alive(self) -> bool:
        """``now - last_seen < threshold`` for the freshest worker row."""
        latest = self.latest_heartbeat()
        if latest is None:
            return False
        return latest.is_alive(self._store.now(), self.alive_threshold_seconds)

    def remove_worker(self, worker_id: str) -> bool:
        with self._store.transaction("remove_worker") as conn:
            result = conn.execute(
                worker_heartbeats_table.delete().where(_w.worker_id == worker_id)
            )
        return result.rowcount == 1

    @staticmethod
    def _row_to_worker(row: Any) -> WorkerHeartbeat:
        return WorkerHeartbeat(
            worker_id=row.worker_id,
            last_seen_at=row.last_seen_at,
            started_at=row.started_at,
            hostname=row.hostname,
            pid=row.pid,
            lanes=row.lanes or [],
            meta=row.meta or {},
        )

    # ── Abandoned leases ─────────────────────────────────────────

    def _stale_cutoff(self) -> datetime:
        return self._store.now() - timedelta(seconds=self._store.lease_timeout_seconds)

    def find_abandoned(self, limit: int = 100) -> list[Job]:
        """Jobs holding a lease whose heartbeat is older than the lease timeout."""
        stmt = (
            select(jobs_table)
            .where(_c.status.in_(_ACTIVE), _c.heartbeat_at < self._stale_cutoff())
            .order_by(_c.heartbeat_at.asc())
            .limit(limit)
        )
        with self._store.transaction("find_abandoned") as conn:
            rows = conn.execute(stmt).all()
        return [self._store.row_to_job(row) for row in rows]

    def count_abandoned(self) -> int:
        stmt = select(func.count()).where(
            _c.status.in_(_ACTIVE), _c.heartbeat_at < self._stale_cutoff()
        )
        with self._store.transaction("count_abandoned") as conn:
            return conn.execute(stmt).scalar_one()

    def sweep(self, limit: int = 100) -> SweepResult:
        """Dead-letter abandoned jobs with no attempts left; report the rest."""
        store = self._store
        result = SweepResult(checked_at=store.now())

        for job in self.find_abandoned(limit):
            if job.attempts < job.max_attempts:
                result.reclaimable.append(job.id)
                continue
            if self._dead_letter_abandoned(job):
                result.dead_lettered.append(job.id)

        if result.reclaimable or result.dead_lettered:
            logger.info(
                "sweep_completed",
                reclaimable=len(result.reclaimable),
                dead_lettered=len(result.dead_lettered),
            )
        return result

    def _dead_letter_abandoned(self, job: Job) -> bool:
        store = self._store
        with store.transaction("sweep") as conn:
            now = store.now()
            last_error = {
                "type": "LeaseExpired",
                "message": (
                    f"worker {job.claimed_by} stopped heartbeating "
                    f"on attempt {job.attempts} of {job.max_attempts}"
                ),
                "category": ErrorCategory.LEASE.value,
                "retryable": False,
                "attempt": job.attempts,
            }
            validate_job_transition(job.status, JobStatus.DEAD_LETTER)
            updated = conn.execute(
                update(jobs_table)
                .where(
                    _c.id == job.id,
                    _c.status == job.status.value,
                    _c.attempts == job.attempts,
                    _c.heartbeat_at == job.heartbeat_at,
                )
                .values(
                    status=JobStatus.DEAD_LETTER.value,
                    last_error=last_error,
                    claimed_by=None,
                    claimed_at=None,
                    heartbeat_at=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
            if updated.rowcount != 1:
                return False
            store.record_event(
                job.id,
                JobEventType.ABANDONED,
                worker_id=job.claimed_by,
                data={"reason": "lease_expired", "attempt": job.attempts},
                conn=conn,
            )
        logger.error(
            "job_dead_lettered",
            job_id=job.id,
            kind=job.kind,
            attempt=job.attempts,
            reason="lease_expired",
            previous_worker=job.claimed_by,
        )
        return True


class LeaseKeeper:
    """Background thread that keeps a worker's leases (and its own row) fresh.

    Each tracked job gets a :class:`threading.Event`; it is set as soon as a
    heartbeat for that job is refused, which is how handlers learn about
    Cancel or a reclaim.  Heartbeat errors are logged and swallowed.

    Args:
        leases: Lease manager used for job heartbeats
        worker_id: Worker owning the leases
        interval: Seconds between heartbeats (must be below the lease timeout)
        monitor: When given, the worker row is refreshed on every tick
        worker_info: Returns the keyword arguments for ``monitor.beat``
    """

    def __init__(
        self,
        leases: LeaseManager,
        worker_id: str,
        *,
        interval: float = 15.0,
        monitor: HeartbeatMonitor | None = None,
        worker_info: Callable[[], dict[str, Any]] | None = None,
    ):
        self._leases = leases
        self.worker_id = worker_id
        self.interval = interval
        self._monitor = monitor
        self._worker_info = worker_info or dict
        self._jobs: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def track(self, job_id: str) -> threading.Event:
        """Start heartbeating *job_id*; returns its cancel flag."""
        cancelled = threading.Event()
        with self._lock:
            self._jobs[job_id] = cancelled
        return cancelled

    def untrack(self, job_id: str) -> bool:
        """Stop heartbeating *job_id*; ``False`` if it was not tracked."""
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    @property
    def tracked(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def beat_once(self) -> None:
        """Heartbeat the worker row and every tracked job once."""
        if self._monitor is not None:
            try:
                self._monitor.beat(self.worker_id, **self._worker_info())
            except Exception as e:
                logger.warning("heartbeat_failed", worker_id=self.worker_id, error=str(e))

        with self._lock:
            jobs = list(self._jobs.items())
        for job_id, cancelled in jobs:
            try:
                held = self._leases.heartbeat(job_id, self.worker_id)
            except Exception as e:
                logger.warning(
                    "heartbeat_failed", job_id=job_id, worker_id=self.worker_id, error=str(e)
                )
                continue
            # A job untracked meanwhile was finalized by its worker
            if not held and self.untrack(job_id):
                logger.warning("lease_lost", job_id=job_id, worker_id=self.worker_id)
                cancelled.set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"lease-keeper-{self.worker_id}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.beat_once()


__all__ = ["HeartbeatMonitor", "LeaseKeeper", "SweepResult"]
