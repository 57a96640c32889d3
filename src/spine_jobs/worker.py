"""Background worker loop — claims jobs and runs their handlers.

The WorkerLoop is the process side of the queue.  It repeatedly claims the
best eligible job from its lanes, runs the handler registered for the job's
kind in a thread pool, keeps the lease alive while the handler runs and
reports the outcome through Finalize.

Usage (programmatic)::

    from spine_jobs import JobQueue
    from spine_jobs.worker import WorkerLoop

    queue = JobQueue.from_settings()
    worker = WorkerLoop(queue, lanes=["realtime", "background"], concurrency=4)
    worker.start()  # blocks until SIGINT/SIGTERM

Usage (CLI)::

    spine-jobs worker start --lane realtime --lane background --concurrency 4
"""

from __future__ import annotations

import os
import platform
import random
import signal
import threading
import time
import uuid
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pydantic

from .context import JobContext
from .heartbeat import LeaseKeeper
from .logging import LogContext, get_logger
from .metrics import JobMetrics
from .models import Failure, Job, JobStatus, Success
from .queue import JobQueue
from .registry import HandlerRegistry

logger = get_logger(__name__)


@dataclass
class WorkerInfo:
    """Metadata about a running worker."""

    worker_id: str
    pid: int
    started_at: datetime
    lanes: list[str]
    concurrency: int
    status: str = "running"
    hostname: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "lanes": self.lanes,
            "concurrency": self.concurrency,
            "status": self.status,
            "hostname": self.hostname,
        }


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    total_claimed: int = 0
    total_succeeded: int = 0
    total_retried: int = 0
    total_dead_lettered: int = 0
    total_lease_lost: int = 0
    uptime_seconds: float = 0
    last_poll_at: datetime | None = None
    active_jobs: int = 0
    by_kind: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_claimed": self.total_claimed,
            "total_succeeded": self.total_succeeded,
            "total_retried": self.total_retried,
            "total_dead_lettered": self.total_dead_lettered,
            "total_lease_lost": self.total_lease_lost,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "active_jobs": self.active_jobs,
            "by_kind": self.by_kind,
        }


# --------------------------------------------------------------------------- #
# Global worker registry (for stats / health endpoints)
# --------------------------------------------------------------------------- #

_active_workers: dict[str, WorkerLoop] = {}
_workers_lock = threading.Lock()


def get_active_workers() -> list[WorkerInfo]:
    """Return info about all active worker loops (in this process)."""
    with _workers_lock:
        return [w.info for w in _active_workers.values()]


def get_worker_stats() -> list[dict[str, Any]]:
    """Return stats dicts for all active workers."""
    with _workers_lock:
        return [w.get_stats().to_dict() for w in _active_workers.values()]


# --------------------------------------------------------------------------- #
# WorkerLoop
# --------------------------------------------------------------------------- #


class WorkerLoop:
    """Claims jobs from the queue and runs them.

    Architecture:
        1. ``claim`` takes the best eligible job from the worker's lanes
           (compare-and-swap in the store; no in-process locking).
        2. ``mark_running`` moves it to ``running``; the :class:`LeaseKeeper`
           starts heartbeating it.
        3. The handler registered for ``job.kind`` runs in the thread pool
           with a parsed payload and a :class:`JobContext`.
        4. ``finalize`` reports success or failure.  A refused Finalize
           means the lease was lost; the outcome is dropped.

    When nothing is claimable the loop sleeps a randomized interval that
    grows while idle (capped at ``max_poll_interval``) so an idle fleet
    does not poll in lockstep.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        registry: HandlerRegistry | None = None,
        lanes: str | Sequence[str] | None = None,
        owner_id: str | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        max_poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        sweep_interval: float | None = None,
        rng: random.Random | None = None,
        metrics: JobMetrics | None = None,
    ):
        """
        Args:
            queue: Queue to claim from.
            registry: Handler registry. Defaults to the queue's registry.
            lanes: Lanes to claim from. Defaults to ``settings.lanes``.
            owner_id: Only claim jobs of this owner (per-tenant workers).
            worker_id: Custom worker identifier. Auto-generated if ``None``.
            concurrency: Handler threads. Defaults to ``settings.worker_concurrency``.
            poll_interval: Base idle sleep in seconds.
            max_poll_interval: Cap on the idle sleep.
            heartbeat_interval: Seconds between lease heartbeats.
            sweep_interval: Seconds between abandoned-lease sweeps; ``0`` disables.
            rng: Random source for idle jitter (injectable for tests).
            metrics: Per-kind handler metrics. A fresh :class:`JobMetrics` if ``None``.
        """
        settings = queue.settings
        self.queue = queue
        self._registry = registry if registry is not None else queue.registry
        if isinstance(lanes, str):
            lanes = [lanes]
        self.lanes = list(lanes) if lanes else list(settings.lanes)
        self.owner_id = owner_id
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._concurrency = concurrency or settings.worker_concurrency
        self._poll_interval = poll_interval or settings.poll_interval_seconds
        self._max_poll_interval = max(
            max_poll_interval or settings.max_poll_interval_seconds, self._poll_interval
        )
        self._sweep_interval = (
            settings.sweep_interval_seconds if sweep_interval is None else sweep_interval
        )
        self._rng = rng or random.Random()
        self.metrics = metrics or JobMetrics()

        heartbeat_interval = heartbeat_interval or settings.heartbeat_interval_seconds
        if heartbeat_interval >= queue.store.lease_timeout_seconds:
            raise ValueError(
                f"heartbeat_interval ({heartbeat_interval}s) must be shorter than the "
                f"lease timeout ({queue.store.lease_timeout_seconds}s)"
            )

        self._shutdown = threading.Event()
        self._started_at = queue.store.now()
        self._stats = WorkerStats()
        self._stats_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self._concurrency)
        self._pool: ThreadPoolExecutor | None = None

        self.info = WorkerInfo(
            worker_id=self._worker_id,
            pid=os.getpid(),
            started_at=self._started_at,
            lanes=self.lanes,
            concurrency=self._concurrency,
            hostname=platform.node(),
        )
        self._keeper = LeaseKeeper(
            queue.leases,
            self._worker_id,
            interval=heartbeat_interval,
            monitor=queue.monitor,
            worker_info=self._heartbeat_info,
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the claim loop (blocking). Installs signal handlers for
        graceful shutdown on SIGINT / SIGTERM.
        """
        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            lanes=self.lanes,
            concurrency=self._concurrency,
            poll_interval=self._poll_interval,
        )

        with _workers_lock:
            _active_workers[self._worker_id] = self

        # Signal handlers (only in main thread)
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # Not in main thread; skip signal registration

        pool = self._pool = ThreadPoolExecutor(
            max_workers=self._concurrency,
            thread_name_prefix=self._worker_id,
        )
        self._keeper.beat_once()
        self._keeper.start()
        try:
            self._run_loop(pool)
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread. Returns the thread."""
        t = threading.Thread(
            target=self.start,
            name=f"{self._worker_id}-loop",
            daemon=True,
        )
        t.start()
        return t

    def stop(self) -> None:
        """Request graceful shutdown; running handlers are allowed to finish."""
        logger.info("worker_stopping", worker_id=self._worker_id)
        self._shutdown.set()
        self.info.status = "stopping"

    def get_stats(self) -> WorkerStats:
        """Return current worker statistics."""
        with self._stats_lock:
            self._stats.active_jobs = len(self._keeper.tracked)
            self._stats.by_kind = self.metrics.snapshot()
            self._stats.uptime_seconds = (
                self.queue.store.now() - self._started_at
            ).total_seconds()
            return self._stats

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _run_loop(self, pool: ThreadPoolExecutor) -> None:
        idle_polls = 0
        next_sweep = time.monotonic()

        while not self._shutdown.is_set():
            if self._sweep_interval and time.monotonic() >= next_sweep:
                self._sweep()
                next_sweep = time.monotonic() + self._sweep_interval

            # wait for a free handler slot
            if not self._slots.acquire(timeout=self._poll_interval):
                continue

            job = None
            try:
                job = self._claim()
            except Exception:
                logger.exception("claim_failed", worker_id=self._worker_id)
            finally:
                with self._stats_lock:
                    self._stats.last_poll_at = self.queue.store.now()

            if job is None:
                self._slots.release()
                idle_polls += 1
                self._shutdown.wait(self.idle_delay(idle_polls))
                continue

            idle_polls = 0
            pool.submit(self._run_slot, job)

    def idle_delay(self, idle_polls: int) -> float:
        """Randomized sleep after *idle_polls* consecutive empty claims."""
        ceiling = self._poll_interval * (2 ** min(max(idle_polls - 1, 0), 16))
        ceiling = min(ceiling, self._max_poll_interval)
        return self._rng.uniform(ceiling / 2, ceiling)

    def _sweep(self) -> None:
        try:
            self.queue.sweep()
        except Exception:
            logger.exception("sweep_failed", worker_id=self._worker_id)

    def _claim(self) -> Job | None:
        return self.queue.claim(self._worker_id, lanes=self.lanes, owner_id=self.owner_id)

    def _run_slot(self, job: Job) -> None:
        try:
            self.process(job)
        except Exception:
            logger.exception("job_processing_failed", job_id=job.id, worker_id=self._worker_id)
        finally:
            self._slots.release()

    def run_once(self) -> Job | None:
        """Claim and run at most one job synchronously.

        Returns the job as it stands after Finalize, or ``None`` when
        nothing was claimable.
        """
        job = self._claim()
        if job is None:
            return None
        own_keeper = not self._keeper.is_running
        if own_keeper:
            self._keeper.start()
        try:
            return self.process(job)
        finally:
            if own_keeper:
                self._keeper.stop()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def process(self, job: Job) -> Job | None:
        """Run the handler for an already-claimed *job* and finalize it."""
        with self._stats_lock:
            self._stats.total_claimed += 1
        cancelled = self._keeper.track(job.id)
        try:
            if not self.queue.mark_running(job.id, self._worker_id):
                logger.warning("lease_lost", job_id=job.id, worker_id=self._worker_id)
                self._record(job.kind, "lease_lost")
                return self._current(job.id)
            job.status = JobStatus.RUNNING

            with LogContext(
                job_id=job.id, kind=job.kind, worker_id=self._worker_id, attempt=job.attempts
            ):
                with self.metrics.running(job.kind):
                    outcome = self._invoke(job, cancelled)
                # Stop heartbeating before Finalize releases the lease
                self._keeper.untrack(job.id)
                applied = self.queue.finalize(
                    job.id, self._worker_id, outcome, attempt=job.attempts
                )
        finally:
            self._keeper.untrack(job.id)

        final = self._current(job.id)
        if not applied:
            self._record(job.kind, "lease_lost")
        elif final is not None:
            if final.status is JobStatus.SUCCEEDED:
                self._record(job.kind, "succeeded")
            elif final.status is JobStatus.DEAD_LETTER:
                self._record(job.kind, "dead_lettered")
            else:
                self._record(job.kind, "retried")
        return final

    def _invoke(self, job: Job, cancelled: threading.Event) -> Success | Failure:
        try:
            spec = self._registry.get_spec(job.kind)
            payload = self._registry.parse_payload(job.kind, job.payload)
            ctx = JobContext(
                job=job,
                worker_id=self._worker_id,
                payload=payload,
                cancelled=cancelled,
                leases=self.queue.leases,
            )
            result = spec.fn(payload, ctx)
        except Exception as exc:
            logger.error("handler_failed", error=str(exc), exc_info=True)
            return Failure(exc)
        if isinstance(result, pydantic.BaseModel):
            result = result.model_dump(mode="json")
        return Success(result)

    def _current(self, job_id: str) -> Job | None:
        return self.queue.store.get_job(job_id)

    def _record(self, kind: str, outcome: str) -> None:
        name = f"total_{outcome}"
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)
        self.metrics.record_outcome(kind, outcome)

    def _heartbeat_info(self) -> dict[str, Any]:
        return {
            "hostname": self.info.hostname,
            "pid": self.info.pid,
            "lanes": self.lanes,
            "started_at": self._started_at,
            "meta": {
                "concurrency": self._concurrency,
                "active_jobs": len(self._keeper.tracked),
                "owner_id": self.owner_id,
            },
        }

    # ------------------------------------------------------------------ #
    # Signal handling & cleanup
    # ------------------------------------------------------------------ #

    def _handle_signal(self, signum, frame):
        logger.info("worker_signal_received", worker_id=self._worker_id, signal=signum)
        self.stop()

    def _cleanup(self) -> None:
        """Wait for running handlers, then stop heartbeating."""
        self.info.status = "stopped"

        with _workers_lock:
            _active_workers.pop(self._worker_id, None)

        if self._pool is not None:
            self._pool.shutdown(wait=True, cancel_futures=False)
            self._pool = None
        self._keeper.stop()

        stats = self.get_stats()
        logger.info(
            "worker_stopped",
            worker_id=self._worker_id,
            claimed=stats.total_claimed,
            succeeded=stats.total_succeeded,
            dead_lettered=stats.total_dead_lettered,
        )


__all__ = [
    "WorkerInfo",
    "WorkerStats",
    "WorkerLoop",
    "get_active_workers",
    "get_worker_stats",
]
