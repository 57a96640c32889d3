"""Job store - durable record of all jobs and their events.

The JobStore owns every read and every operator-driven write against the
``jobs`` / ``job_events`` tables.  It is the single source of truth for job
state: there is no in-process scheduler, and every transition is a
conditional UPDATE keyed on the state the caller observed.

Architecture:

    .. code-block:: text

        JobStore — Single Source of Truth
        ┌───────────────────────────────────────────────────────────┐
        │                                                           │
        │  PRODUCER SIDE             OPERATOR SIDE                  │
        │  ─────────────             ─────────────                  │
        │  enqueue()                 cancel()                       │
        │   └─ dedupe via            retry()                        │
        │      uq_jobs_owner_dedupe  status_counts()                │
        │                                                           │
        │  READS                     EVENTS                         │
        │  ─────                     ──────                         │
        │  get_job()                 record_event()                 │
        │  get_next()                get_events()                   │
        │  list_upcoming()                                          │
        │                                                           │
        ├───────────────────────────────────────────────────────────┤
        │  Tables:                                                  │
        │  ┌──────────────────┐     ┌──────────────────────────┐   │
        │  │ jobs             │────>│ job_events               │   │
        │  │ (state machine)  │     │ (append-only event log)  │   │
        │  └──────────────────┘     └──────────────────────────┘   │
        └───────────────────────────────────────────────────────────┘

Claiming, heartbeats and Finalize live in :mod:`spine_jobs.claim`; they
share this store's connection handling, row mapping and eligibility rule.

Example:
    >>> from spine_jobs.orm import create_jobs_engine, create_schema
    >>> from spine_jobs.models import Job
    >>> from spine_jobs.store import JobStore
    >>>
    >>> engine = create_jobs_engine("sqlite:///jobs.db")
    >>> create_schema(engine)
    >>> store = JobStore(engine)
    >>> result = store.enqueue(Job.create("user-1", "email_sync", {"mailbox": "inbox"}))
    >>> store.get_job(result.job_id).status
    <JobStatus.QUEUED: 'queued'>
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
)
from .models import (
    ACTIVE_STATUSES,
    CANCELABLE_STATUSES,
    NON_TERMINAL_STATUSES,
    RETRYABLE_BY_OPERATOR,
    EnqueueResult,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    utcnow,
    validate_job_transition,
)
from .orm.tables import job_events_table, jobs_table

Clock = Callable[[], datetime]

# Statuses ListUpcoming shows when the caller doesn't choose
DEFAULT_UPCOMING_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.CLAIMED,
    JobStatus.RUNNING,
)

MAX_LIST_LIMIT = 1000

# Cancel retries its conditional update this many times when it races a claim
_CANCEL_ATTEMPTS = 3

_c = jobs_table.c

# Claim order: priority desc, run_at asc, then FIFO
CLAIM_ORDER = (_c.priority.desc(), _c.run_at.asc(), _c.created_at.asc(), _c.id.asc())


def _values(statuses: Iterable[JobStatus]) -> list[str]:
    return sorted(JobStatus(s).value for s in statuses)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into :class:`StoreError`."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation} failed: {exc}", cause=exc) from exc


class JobStore:
    """Manages the job table (jobs + events).

    Works with any SQLAlchemy engine; SQLite engines must come from
    :func:`spine_jobs.orm.create_jobs_engine` so transactions take the write
    lock up front.

    Args:
        engine: SQLAlchemy engine
        clock: Returns the current aware UTC time (injectable for tests)
        lease_timeout_seconds: Heartbeat age after which a claim counts as abandoned
    """

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock = utcnow,
        lease_timeout_seconds: float = 60.0,
    ):
        self._engine = engine
        self._clock = clock
        self.lease_timeout_seconds = lease_timeout_seconds

    @property
    def engine(self) -> Engine:
        return self._engine

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Connection]:
        """One store transaction; SQLAlchemy errors surface as StoreError."""
        with store_errors(operation), self._engine.begin() as conn:
            yield conn

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def job_to_row(job: Job) -> dict[str, Any]:
        return {
            "id": job.id,
            "owner_id": job.owner_id,
            "kind": job.kind,
            "payload": job.payload,
            "status": job.status.value,
            "priority": job.priority,
            "lane": job.lane,
            "run_at": job.run_at,
            "next_retry_at": job.next_retry_at,
            "dedupe_key": job.dedupe_key,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "claimed_by": job.claimed_by,
            "claimed_at": job.claimed_at,
            "heartbeat_at": job.heartbeat_at,
            "last_error": job.last_error,
            "last_result": job.last_result,
            "created_at": job.created_at,
            "updated_at": job.updated_at,
            "started_at": job.started_at,
            "finished_at": job.finished_at,
            "cancel_reason": job.cancel_reason,
        }

    @staticmethod
    def row_to_job(row: Row) -> Job:
        m = row._mapping
        return Job(
            id=m["id"],
            owner_id=m["owner_id"],
            kind=m["kind"],
            payload=m["payload"] or {},
            status=JobStatus(m["status"]),
            priority=m["priority"],
            lane=m["lane"],
            run_at=m["run_at"],
            next_retry_at=m["next_retry_at"],
            dedupe_key=m["dedupe_key"],
            attempts=m["attempts"],
            max_attempts=m["max_attempts"],
            claimed_by=m["claimed_by"],
            claimed_at=m["claimed_at"],
            heartbeat_at=m["heartbeat_at"],
            last_error=m["last_error"],
            last_result=m["last_result"],
            created_at=m["created_at"],
            updated_at=m["updated_at"],
            started_at=m["started_at"],
            finished_at=m["finished_at"],
            cancel_reason=m["cancel_reason"],
        )

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(self, job: Job) -> EnqueueResult:
        """Insert *job*, or return the in-flight job holding its dedupe key.

        The partial unique index on ``(owner_id, dedupe_key)`` decides
        collisions, so two producers racing with the same key end up with
        one row and the same ``job_id``.  When the holder finishes between
        our failed insert and the lookup, the insert is tried once more.
        """
        for _ in range(2):
            try:
                with self._engine.begin() as conn:
                    if job.dedupe_key is not None:
                        existing = self._find_in_flight(conn, job.owner_id, job.dedupe_key)
                        if existing is not None:
                            return EnqueueResult(job_id=existing.id, deduped=True, job=existing)
                    conn.execute(insert(jobs_table).values(**self.job_to_row(job)))
                    self.record_event(
                        job.id,
                        JobEventType.ENQUEUED,
                        data={"kind": job.kind, "lane": job.lane, "priority": job.priority},
                        conn=conn,
                    )
                return EnqueueResult(job_id=job.id, deduped=False, job=job)
            except IntegrityError as exc:
                if job.dedupe_key is None:
                    raise StoreError(f"enqueue failed: {exc}", cause=exc) from exc
                with store_errors("enqueue"), self._engine.begin() as conn:
                    existing = self._find_in_flight(conn, job.owner_id, job.dedupe_key)
                if existing is not None:
                    return EnqueueResult(job_id=existing.id, deduped=True, job=existing)
            except SQLAlchemyError as exc:
                raise StoreError(f"enqueue failed: {exc}", cause=exc) from exc
        raise ConflictError(
            f"dedupe key {job.dedupe_key!r} is contended; enqueue again"
        ).with_context(owner_id=job.owner_id, kind=job.kind)

    def _find_in_flight(self, conn: Connection, owner_id: str, dedupe_key: str) -> Job | None:
        row = conn.execute(
            select(jobs_table).where(
                _c.owner_id == owner_id,
                _c.dedupe_key == dedupe_key,
                _c.status.in_(_values(NON_TERMINAL_STATUSES)),
            )
        ).first()
        return self.row_to_job(row) if row is not None else None

    # =========================================================================
    # READS
    # =========================================================================

    def get_job(self, job_id: str, owner_id: str | None = None) -> Job | None:
        """Get a job by id, optionally scoped to *owner_id*."""
        stmt = select(jobs_table).where(_c.id == job_id)
        if owner_id is not None:
            stmt = stmt.where(_c.owner_id == owner_id)
        with self.transaction("get_job") as conn:
            row = conn.execute(stmt).first()
        return self.row_to_job(row) if row is not None else None

    def require_job(self, job_id: str, owner_id: str | None = None) -> Job:
        job = self.get_job(job_id, owner_id)
        if job is None:
            raise NotFoundError(f"Job {job_id!r} not found").with_context(
                job_id=job_id, owner_id=owner_id
            )
        return job

    def claimable_clause(
        self,
        now: datetime,
        *,
        lanes: Sequence[str] | None = None,
        owner_id: str | None = None,
    ) -> ColumnElement[bool]:
        """WHERE clause matching jobs a worker may claim at *now*.

        A job is claimable when it is queued and due, or when it holds a
        lease whose heartbeat is older than the lease timeout and it still
        has attempts left.
        """
        cutoff = now - timedelta(seconds=self.lease_timeout_seconds)
        due = and_(_c.status == JobStatus.QUEUED.value, _c.run_at <= now)
        abandoned = and_(
            _c.status.in_(_values(ACTIVE_STATUSES)),
            _c.heartbeat_at < cutoff,
            _c.attempts < _c.max_attempts,
        )
        clause = or_(due, abandoned)
        if lanes:
            clause = and_(clause, _c.lane.in_(list(lanes)))
        if owner_id is not None:
            clause = and_(clause, _c.owner_id == owner_id)
        return clause

    def get_next(self, owner_id: str | None = None, lanes: Sequence[str] | None = None) -> Job | None:
        """Highest-ranked claimable job, without claiming it."""
        stmt = (
            select(jobs_table)
            .where(self.claimable_clause(self.now(), lanes=lanes, owner_id=owner_id))
            .order_by(*CLAIM_ORDER)
            .limit(1)
        )
        with self.transaction("get_next") as conn:
            row = conn.execute(stmt).first()
        return self.row_to_job(row) if row is not None else None

    def list_upcoming(
        self,
        owner_id: str | None = None,
        statuses: Iterable[JobStatus | str] | None = None,
        limit: int = 20,
        *,
        lanes: Sequence[str] | None = None,
    ) -> list[Job]:
        """Jobs in *statuses*, soonest ``run_at`` first."""
        wanted = _values(JobStatus(s) for s in (statuses or DEFAULT_UPCOMING_STATUSES))
        stmt = select(jobs_table).where(_c.status.in_(wanted))
        if owner_id is not None:
            stmt = stmt.where(_c.owner_id == owner_id)
        if lanes:
            stmt = stmt.where(_c.lane.in_(list(lanes)))
        stmt = stmt.order_by(_c.run_at.asc(), _c.priority.desc(), _c.created_at.asc()).limit(
            min(limit, MAX_LIST_LIMIT)
        )
        with self.transaction("list_upcoming") as conn:
            rows = conn.execute(stmt).all()
        return [self.row_to_job(row) for row in rows]

    def status_counts(self, owner_id: str | None = None) -> dict[str, int]:
        """Job count per status, every status present (zero-filled)."""
        stmt = select(_c.status, func.count()).group_by(_c.status)
        if owner_id is not None:
            stmt = stmt.where(_c.owner_id == owner_id)
        with self.transaction("status_counts") as conn:
            rows = conn.execute(stmt).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[status] = count
        return counts

    # =========================================================================
    # OPERATOR TRANSITIONS
    # =========================================================================

    def cancel(self, job_id: str, owner_id: str, reason: str | None = None) -> tuple[Job, bool]:
        """Cancel a job the owner holds.

        Returns ``(job, changed)``.  Canceling a job that is already terminal
        (or sitting in legacy ``failed``) is a no-op success with
        ``changed=False``.  The update is conditional on the status read in
        the same transaction; if a worker moved the job in between, the
        new state is re-evaluated.

        Raises:
            NotFoundError: Unknown job or owned by someone else
        """
        for _ in range(_CANCEL_ATTEMPTS):
            with self.transaction("cancel") as conn:
                row = conn.execute(
                    select(jobs_table).where(_c.id == job_id, _c.owner_id == owner_id)
                ).first()
                if row is None:
                    raise NotFoundError(f"Job {job_id!r} not found").with_context(
                        job_id=job_id, owner_id=owner_id
                    )
                job = self.row_to_job(row)
                if job.status not in CANCELABLE_STATUSES:
                    return job, False
                validate_job_transition(job.status, JobStatus.CANCELED)

                now = self.now()
                result = conn.execute(
                    update(jobs_table)
                    .where(_c.id == job_id, _c.status == job.status.value)
                    .values(
                        status=JobStatus.CANCELED.value,
                        cancel_reason=reason,
                        claimed_by=None,
                        finished_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    self.record_event(
                        job_id,
                        JobEventType.CANCELED,
                        worker_id=job.claimed_by,
                        data={"reason": reason, "from_status": job.status.value},
                        conn=conn,
                    )
                    job.status = JobStatus.CANCELED
                    job.cancel_reason = reason
                    job.claimed_by = None
                    job.finished_at = now
                    job.updated_at = now
                    return job, True
        # lost every race; report whatever the winner left behind
        return self.require_job(job_id, owner_id), False

    def retry(self, job_id: str, owner_id: str | None = None) -> Job:
        """Operator re-queue of a dead-lettered (or legacy failed) job.

        Resets ``attempts``, ``next_retry_at`` and ``last_error`` and makes
        the job due immediately.

        Raises:
            NotFoundError: Unknown job (or not owned by *owner_id* when given)
            InvalidTransitionError: Job is not in ``dead_letter`` / ``failed``
            ConflictError: Another in-flight job now holds the same dedupe key
        """
        with self.transaction("retry") as conn:
            stmt = select(jobs_table).where(_c.id == job_id)
            if owner_id is not None:
                stmt = stmt.where(_c.owner_id == owner_id)
            row = conn.execute(stmt).first()
            if row is None:
                raise NotFoundError(f"Job {job_id!r} not found").with_context(
                    job_id=job_id, owner_id=owner_id
                )
            job = self.row_to_job(row)
            if job.status not in RETRYABLE_BY_OPERATOR:
                raise InvalidTransitionError(job.status.value, JobStatus.QUEUED.value).with_context(
                    job_id=job_id
                )
            validate_job_transition(job.status, JobStatus.QUEUED)

            now = self.now()
            changes: dict[str, Any] = {
                "status": JobStatus.QUEUED.value,
                "attempts": 0,
                "next_retry_at": None,
                "last_error": None,
                "run_at": now,
                "claimed_by": None,
                "claimed_at": None,
                "heartbeat_at": None,
                "finished_at": None,
                "updated_at": now,
            }
            try:
                result = conn.execute(
                    update(jobs_table)
                    .where(_c.id == job_id, _c.status == job.status.value)
                    .values(**changes)
                )
            except IntegrityError as exc:
                raise ConflictError(
                    f"Job {job_id!r} cannot be retried: dedupe key {job.dedupe_key!r} "
                    "is held by another in-flight job",
                    cause=exc,
                ).with_context(job_id=job_id, owner_id=job.owner_id)
            if result.rowcount != 1:
                raise ConflictError(f"Job {job_id!r} changed while retrying").with_context(
                    job_id=job_id
                )
            self.record_event(
                job_id,
                JobEventType.REQUEUED,
                data={"from_status": job.status.value, "previous_attempts": job.attempts},
                conn=conn,
            )

        for key, value in changes.items():
            setattr(job, key, JobStatus(value) if key == "status" else value)
        return job

    # =========================================================================
    # EVENTS
    # =========================================================================

    def record_event(
        self,
        job_id: str,
        event_type: JobEventType,
        *,
        worker_id: str | None = None,
        data: dict[str, Any] | None = None,
        conn: Connection | None = None,
    ) -> None:
        """Append an event, inside *conn*'s transaction when one is given."""
        stmt = insert(job_events_table).values(
            job_id=job_id,
            event_type=event_type.value,
            worker_id=worker_id,
            timestamp=self.now(),
            data=data or {},
        )
        if conn is not None:
            conn.execute(stmt)
            return
        with self.transaction("record_event") as own:
            own.execute(stmt)

    def get_events(self, job_id: str, owner_id: str | None = None, limit: int = 500) -> list[JobEvent]:
        """Events for a job in the order they happened.

        Raises:
            NotFoundError: When *owner_id* is given and does not own the job
        """
        if owner_id is not None:
            self.require_job(job_id, owner_id)
        ev = job_events_table.c
        stmt = (
            select(job_events_table)
            .where(ev.job_id == job_id)
            .order_by(ev.timestamp.asc(), ev.id.asc())
            .limit(min(limit, MAX_LIST_LIMIT))
        )
        with self.transaction("get_events") as conn:
            rows = conn.execute(stmt).all()
        return [
            JobEvent(
                id=row.id,
                job_id=row.job_id,
                event_type=JobEventType(row.event_type),
                timestamp=row.timestamp,
                worker_id=row.worker_id,
                data=row.data or {},
            )
            for row in rows
        ]


__all__ = [
    "Clock",
    "CLAIM_ORDER",
    "DEFAULT_UPCOMING_STATUSES",
    "JobStore",
    "store_errors",
]
