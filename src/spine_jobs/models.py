"""Job domain models.

Defines the core data structures for the job queue:
- Job: a unit of deferred work and its lease/retry bookkeeping
- JobStatus: the lifecycle state machine
- JobEvent: append-only history of every transition
- WorkerHeartbeat: fleet liveness rows
- HealthCounts: aggregate counts for dashboards
- Success / Failure: the outcome a worker reports on Finalize

State machine::

    queued -> claimed -> running -> succeeded      (terminal)
                                 -> queued          (transient failure, attempts < max)
                                 -> dead_letter     (attempts exhausted or permanent failure)
    queued|claimed|running -> canceled              (terminal, external request)
    claimed|running -> claimed                      (reclaim after lease expiry, attempts+1)
    dead_letter|failed -> queued                    (operator Retry, attempts reset)

These models are used by JobStore, LeaseManager, HeartbeatMonitor and JobQueue.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Status of a job.

    ``failed`` is never written by the queue itself. It exists for rows
    carried over from the legacy executions table, which used it as its
    terminal failure state; operators can Retry such rows.
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELED = "canceled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.DEAD_LETTER,
    JobStatus.CANCELED,
})

# Statuses holding a lease
ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.CLAIMED,
    JobStatus.RUNNING,
})

CANCELABLE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.QUEUED,
    JobStatus.CLAIMED,
    JobStatus.RUNNING,
})

RETRYABLE_BY_OPERATOR: frozenset[JobStatus] = frozenset({
    JobStatus.DEAD_LETTER,
    JobStatus.FAILED,
})

# Statuses that hold their (owner_id, dedupe_key) pair
NON_TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(set(JobStatus) - TERMINAL_STATUSES)


JOB_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({
        JobStatus.CLAIMED,
        JobStatus.CANCELED,
    }),
    JobStatus.CLAIMED: frozenset({
        JobStatus.RUNNING,
        JobStatus.CLAIMED,  # reclaim
        JobStatus.SUCCEEDED,
        JobStatus.QUEUED,
        JobStatus.DEAD_LETTER,
        JobStatus.CANCELED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.SUCCEEDED,
        JobStatus.QUEUED,  # backoff retry
        JobStatus.DEAD_LETTER,
        JobStatus.CANCELED,
        JobStatus.CLAIMED,  # reclaim
    }),
    JobStatus.FAILED: frozenset({
        JobStatus.QUEUED,  # operator retry
    }),
    JobStatus.DEAD_LETTER: frozenset({
        JobStatus.QUEUED,  # operator retry
    }),
    JobStatus.SUCCEEDED: frozenset(),  # terminal
    JobStatus.CANCELED: frozenset(),  # terminal
}


def validate_job_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_job_transition(JobStatus.RUNNING, JobStatus.SUCCEEDED)
        >>> validate_job_transition(JobStatus.SUCCEEDED, JobStatus.RUNNING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid job transition: succeeded → running
    """
    allowed = JOB_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value)


class JobEventType(str, Enum):
    """Event types recorded in the job event log."""

    ENQUEUED = "enqueued"
    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    STARTED = "started"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    CANCELED = "canceled"
    REQUEUED = "requeued"
    LEASE_LOST = "lease_lost"
    ABANDONED = "abandoned"


@dataclass
class Job:
    """A durable unit of deferred work.

    This is the record stored in the ``jobs`` table.  ``payload`` is opaque
    to the queue; only the handler registered for ``kind`` interprets it.
    """

    id: str
    owner_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    priority: int = 0
    lane: str = "background"
    run_at: datetime = field(default_factory=utcnow)
    next_retry_at: datetime | None = None
    dedupe_key: str | None = None
    attempts: int = 0
    max_attempts: int = 5
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    last_error: dict[str, Any] | None = None
    last_result: Any = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel_reason: str | None = None

    @classmethod
    def create(
        cls,
        owner_id: str,
        kind: str,
        payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Job:
        """Create a new queued job with a fresh id."""
        now = kwargs.pop("now", None) or utcnow()
        kwargs.setdefault("run_at", now)
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            kind=kind,
            payload=payload or {},
            created_at=now,
            updated_at=now,
            **kwargs,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def holds_lease(self) -> bool:
        return self.status in ACTIVE_STATUSES and self.claimed_by is not None

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def lease_expired(self, now: datetime, lease_timeout: float) -> bool:
        """True if this job holds a lease whose heartbeat is older than *lease_timeout*."""
        if self.status not in ACTIVE_STATUSES or self.heartbeat_at is None:
            return False
        return (now - self.heartbeat_at).total_seconds() > lease_timeout

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority,
            "lane": self.lane,
            "run_at": _iso(self.run_at),
            "next_retry_at": _iso(self.next_retry_at),
            "dedupe_key": self.dedupe_key,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "claimed_by": self.claimed_by,
            "claimed_at": _iso(self.claimed_at),
            "heartbeat_at": _iso(self.heartbeat_at),
            "last_error": self.last_error,
            "last_result": self.last_result,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "cancel_reason": self.cancel_reason,
        }


@dataclass
class EnqueueOptions:
    """Optional Enqueue parameters. ``None`` means "use the queue default"."""

    run_at: datetime | None = None
    priority: int | None = None
    lane: str | None = None
    dedupe_key: str | None = None
    max_attempts: int | None = None


@dataclass(frozen=True)
class EnqueueResult:
    """Result of Enqueue: the job id, and whether an in-flight duplicate was returned."""

    job_id: str
    deduped: bool = False
    job: Job | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "deduped": self.deduped}


@dataclass
class JobEvent:
    """Immutable record of a job lifecycle transition.

    ``id`` is assigned by the store (monotonic per database) and orders events
    that share a timestamp.
    """

    job_id: str
    event_type: JobEventType
    timestamp: datetime
    worker_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "worker_id": self.worker_id,
            "data": self.data,
        }


@dataclass
class WorkerHeartbeat:
    """Liveness row for one worker process."""

    worker_id: str
    last_seen_at: datetime
    started_at: datetime | None = None
    hostname: str | None = None
    pid: int | None = None
    lanes: list[str] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    # set by HeartbeatMonitor.list_workers
    alive: bool | None = None

    def is_alive(self, now: datetime, threshold: float) -> bool:
        return (now - self.last_seen_at).total_seconds() < threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "last_seen_at": self.last_seen_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "hostname": self.hostname,
            "pid": self.pid,
            "lanes": self.lanes,
            "meta": self.meta,
            "alive": self.alive,
        }


@dataclass
class HealthCounts:
    """Per-status job counts plus fleet liveness."""

    counts: dict[str, int]
    worker_alive: bool
    last_seen_at: datetime | None = None
    owner_id: str | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.counts)
        result["worker_alive"] = self.worker_alive
        return result


# --- Finalize outcomes ---


@dataclass(frozen=True)
class Success:
    """Handler finished; ``result`` is stored as ``last_result``."""

    result: Any = None


@dataclass(frozen=True)
class Failure:
    """Handler failed.

    ``retryable`` overrides classification of ``error`` when set.
    """

    error: BaseException | str
    retryable: bool | None = None
    retry_after: float | None = None


Outcome = Success | Failure


__all__ = [
    "utcnow",
    "JobStatus",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "CANCELABLE_STATUSES",
    "RETRYABLE_BY_OPERATOR",
    "NON_TERMINAL_STATUSES",
    "JOB_VALID_TRANSITIONS",
    "validate_job_transition",
    "JobEventType",
    "Job",
    "EnqueueOptions",
    "EnqueueResult",
    "JobEvent",
    "WorkerHeartbeat",
    "HealthCounts",
    "Success",
    "Failure",
    "Outcome",
]
