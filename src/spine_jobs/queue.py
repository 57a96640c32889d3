"""Job queue - the external-facing lifecycle API.

:class:`JobQueue` is what an embedding application talks to.  It validates
caller input, applies configured defaults and delegates to the store-level
components:

.. code-block:: text

    JobQueue
    ├── producer      enqueue()
    ├── worker        claim() · heartbeat() · finalize()
    ├── operator      cancel() · retry() · sweep()
    └── inspection    get_job() · get_next() · list_upcoming()
                      get_events() · health_counts() · list_workers()
            │
            ├── JobStore          (jobs, events, dedupe)
            ├── LeaseManager      (claim CAS, finalize, backoff)
            ├── HeartbeatMonitor  (worker rows, abandoned leases)
            └── HandlerRegistry   (kind → payload schema)

Bad input raises :class:`~spine_jobs.errors.ValidationError` before
anything is written; unknown or foreign jobs raise
:class:`~spine_jobs.errors.NotFoundError`; database failures surface as
:class:`~spine_jobs.errors.StoreError`.

Example:
    >>> from spine_jobs import JobQueue, Success
    >>>
    >>> queue = JobQueue.from_settings()
    >>> result = queue.enqueue("user-1", "email_sync", {"mailbox": "inbox"}, priority=10)
    >>> job = queue.claim("worker-1", lanes=["background"])
    >>> queue.finalize(job.id, "worker-1", Success({"synced": 12}))
    True
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

import pydantic
from sqlalchemy.engine import Engine

from .claim import LeaseManager
from .errors import JobQueueError, ValidationError
from .heartbeat import HeartbeatMonitor, SweepResult
from .logging import get_logger
from .models import (
    EnqueueOptions,
    EnqueueResult,
    HealthCounts,
    Job,
    JobEvent,
    JobStatus,
    Outcome,
    WorkerHeartbeat,
    utcnow,
)
from .orm import create_jobs_engine, create_schema
from .registry import HandlerRegistry, get_default_registry
from .retry import BackoffPolicy, RetryClassifier, is_retryable
from .settings import JobQueueSettings, get_settings
from .store import Clock, JobStore

logger = get_logger(__name__)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    return value


def _as_lanes(lanes: str | Sequence[str] | None) -> list[str] | None:
    if lanes is None:
        return None
    if isinstance(lanes, str):
        lanes = [lanes]
    result = [_require_text(lane, "lane") for lane in lanes]
    return result or None


def _as_statuses(statuses: Iterable[JobStatus | str] | None) -> list[JobStatus] | None:
    if statuses is None:
        return None
    result = []
    for status in statuses:
        try:
            result.append(JobStatus(status))
        except ValueError:
            raise ValidationError(
                f"Unknown status {status!r}; expected one of {[s.value for s in JobStatus]}",
                field="statuses",
            ) from None
    return result or None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class JobQueue:
    """Durable job queue over a relational store.

    Args:
        engine: SQLAlchemy engine (see :func:`spine_jobs.orm.create_jobs_engine`)
        registry: Handler registry used to validate payloads on enqueue
        settings: Queue configuration (defaults from the environment)
        clock: Current-time source shared by every component
        backoff: Retry delay policy (defaults from settings)
        classifier: Retryable-failure classifier
    """

    def __init__(
        self,
        engine: Engine,
        *,
        registry: HandlerRegistry | None = None,
        settings: JobQueueSettings | None = None,
        clock: Clock = utcnow,
        backoff: BackoffPolicy | None = None,
        classifier: RetryClassifier = is_retryable,
    ):
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else get_default_registry()
        self.store = JobStore(
            engine,
            clock=clock,
            lease_timeout_seconds=self.settings.lease_timeout_seconds,
        )
        self.leases = LeaseManager(
            self.store,
            backoff=backoff or BackoffPolicy.from_settings(self.settings),
            classifier=classifier,
        )
        self.monitor = HeartbeatMonitor(
            self.store,
            alive_threshold_seconds=self.settings.worker_alive_threshold_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        settings: JobQueueSettings | None = None,
        *,
        create_tables: bool = True,
        **kwargs: Any,
    ) -> JobQueue:
        """Build a queue (and its engine) from :class:`JobQueueSettings`."""
        settings = settings or get_settings()
        engine = create_jobs_engine(settings.database_url, echo=settings.database_echo)
        if create_tables:
            create_schema(engine)
        return cls(engine, settings=settings, **kwargs)

    @property
    def engine(self) -> Engine:
        return self.store.engine

    # =========================================================================
    # PRODUCER
    # =========================================================================

    def enqueue(
        self,
        owner_id: str,
        kind: str,
        payload: dict[str, Any] | pydantic.BaseModel | None = None,
        options: EnqueueOptions | None = None,
        *,
        run_at: datetime | None = None,
        priority: int | None = None,
        lane: str | None = None,
        dedupe_key: str | None = None,
        max_attempts: int | None = None,
    ) -> EnqueueResult:
        """Enqueue a job, or return the in-flight job holding ``dedupe_key``.

        Options may be passed as an :class:`EnqueueOptions` or as keywords
        (keywords win).  Unset options take the configured defaults.

        Raises:
            ValidationError: Missing owner/kind, bad option, payload schema failure
            StoreError: Database failure
        """
        _require_text(owner_id, "owner_id")
        _require_text(kind, "kind")
        opts = options or EnqueueOptions()
        run_at = run_at if run_at is not None else opts.run_at
        priority = priority if priority is not None else opts.priority
        lane = lane if lane is not None else opts.lane
        dedupe_key = dedupe_key if dedupe_key is not None else opts.dedupe_key
        max_attempts = max_attempts if max_attempts is not None else opts.max_attempts

        if priority is None:
            priority = self.settings.default_priority
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer", field="priority")
        if max_attempts is None:
            max_attempts = self.settings.default_max_attempts
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer", field="max_attempts")
        lane = _require_text(lane, "lane") if lane is not None else self.settings.default_lane
        if dedupe_key is not None:
            _require_text(dedupe_key, "dedupe_key")
        if run_at is not None:
            if not isinstance(run_at, datetime):
                raise ValidationError("run_at must be a datetime", field="run_at")
            run_at = _as_utc(run_at)
        if payload is not None and not isinstance(payload, (dict, pydantic.BaseModel)):
            raise ValidationError("payload must be a mapping", field="payload")

        data = self.registry.validate_payload(kind, payload)
        now = self.store.now()
        job = Job.create(
            owner_id,
            kind,
            data,
            now=now,
            run_at=run_at or now,
            priority=priority,
            lane=lane,
            dedupe_key=dedupe_key,
            max_attempts=max_attempts,
        )
        result = self.store.enqueue(job)
        if result.deduped:
            logger.info(
                "job_deduped",
                job_id=result.job_id,
                owner_id=owner_id,
                kind=kind,
                dedupe_key=dedupe_key,
            )
        else:
            logger.info(
                "job_enqueued",
                job_id=result.job_id,
                owner_id=owner_id,
                kind=kind,
                lane=lane,
                priority=priority,
                run_at=job.run_at.isoformat(),
            )
        return result

    # =========================================================================
    # WORKER
    # =========================================================================

    def claim(
        self,
        worker_id: str,
        lanes: str | Sequence[str] | None = None,
        owner_id: str | None = None,
    ) -> Job | None:
        """Claim the best eligible job for *worker_id*, or ``None``."""
        _require_text(worker_id, "worker_id")
        return self.leases.claim(worker_id, lanes=_as_lanes(lanes), owner_id=owner_id)

    def mark_running(self, job_id: str, worker_id: str) -> bool:
        return self.leases.mark_running(job_id, worker_id)

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh a lease. ``False`` means the worker must drop the job.

        Heartbeats are best-effort: a store failure is logged and reported
        as ``True`` since the lease is not known to be lost.
        """
        try:
            return self.leases.heartbeat(job_id, worker_id)
        except JobQueueError as e:
            logger.warning("heartbeat_failed", job_id=job_id, worker_id=worker_id, error=str(e))
            return True

    def finalize(
        self,
        job_id: str,
        worker_id: str,
        outcome: Outcome,
        *,
        attempt: int | None = None,
    ) -> bool:
        """Report a handler outcome. ``False`` on lease loss (nothing applied)."""
        return self.leases.finalize(job_id, worker_id, outcome, attempt=attempt)

    # =========================================================================
    # OPERATOR
    # =========================================================================

    def cancel(self, job_id: str, owner_id: str, reason: str | None = None) -> Job:
        """Cancel a queued/claimed/running job; terminal jobs are left alone.

        Raises:
            NotFoundError: Unknown job or not owned by *owner_id*
        """
        _require_text(job_id, "job_id")
        _require_text(owner_id, "owner_id")
        job, changed = self.store.cancel(job_id, owner_id, reason)
        if changed:
            logger.info("job_canceled", job_id=job_id, owner_id=owner_id, reason=reason)
        return job

    def retry(self, job_id: str, owner_id: str | None = None) -> Job:
        """Operator re-queue of a dead-lettered job (attempts reset).

        Raises:
            NotFoundError: Unknown job
            InvalidTransitionError: Job is not dead-lettered
            ConflictError: Its dedupe key is held by another in-flight job
        """
        _require_text(job_id, "job_id")
        job = self.store.retry(job_id, owner_id)
        logger.info("job_requeued", job_id=job_id, owner_id=job.owner_id, kind=job.kind)
        return job

    def sweep(self, limit: int = 100) -> SweepResult:
        """Run one abandoned-lease sweep."""
        return self.monitor.sweep(limit)

    def worker_heartbeat(self, worker_id: str, **info: Any) -> None:
        self.monitor.beat(_require_text(worker_id, "worker_id"), **info)

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def get_job(self, job_id: str, owner_id: str | None = None) -> Job:
        """Raises :class:`NotFoundError` for unknown (or foreign) jobs."""
        return self.store.require_job(job_id, owner_id)

    def get_next(self, owner_id: str, lane: str | Sequence[str] | None = None) -> Job | None:
        """The job Claim would hand out next for *owner_id*. Read-only."""
        _require_text(owner_id, "owner_id")
        return self.store.get_next(owner_id=owner_id, lanes=_as_lanes(lane))

    def list_upcoming(
        self,
        owner_id: str,
        statuses: Iterable[JobStatus | str] | None = None,
        limit: int = 20,
    ) -> list[Job]:
        _require_text(owner_id, "owner_id")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer", field="limit")
        return self.store.list_upcoming(owner_id, _as_statuses(statuses), limit)

    def get_events(self, job_id: str, owner_id: str | None = None) -> list[JobEvent]:
        return self.store.get_events(job_id, owner_id)

    def health_counts(self, owner_id: str | None = None) -> HealthCounts:
        """Per-status counts plus ``worker_alive`` from the freshest worker row."""
        counts = self.store.status_counts(owner_id)
        latest = self.monitor.latest_heartbeat()
        alive = latest is not None and latest.is_alive(
            self.store.now(), self.monitor.alive_threshold_seconds
        )
        return HealthCounts(
            counts=counts,
            worker_alive=alive,
            last_seen_at=latest.last_seen_at if latest else None,
            owner_id=owner_id,
        )

    def list_workers(self) -> list[WorkerHeartbeat]:
        return self.monitor.list_workers()


__all__ = ["JobQueue"]
