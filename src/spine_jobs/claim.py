"""Claim protocol - leases, heartbeats and Finalize.

Every write a worker makes goes through :class:`LeaseManager`, and every
one of them is a compare-and-swap: the UPDATE carries the values the worker
last observed in its WHERE clause and the worker checks ``rowcount``.  A
worker whose precondition no longer holds (job reclaimed, canceled,
finalized elsewhere) gets ``None`` / ``False`` back and must drop the job.

Claim::

    BEGIN
      SELECT … WHERE claimable ORDER BY priority DESC, run_at, created_at
             LIMIT n [FOR UPDATE SKIP LOCKED]
      for candidate:
        UPDATE jobs SET status='claimed', claimed_by=:w, attempts=attempts+1, …
         WHERE id=:id AND status=:seen AND attempts=:seen
               AND heartbeat_at IS NOT DISTINCT FROM :seen
        rowcount == 1  → won, record event, return
    COMMIT

On PostgreSQL ``SKIP LOCKED`` keeps racing workers off each other's rows;
on SQLite the transaction holds the write lock (``BEGIN IMMEDIATE``).  The
conditional UPDATE is what guarantees exclusivity on every backend.

Finalize(failure) consults :class:`~spine_jobs.retry.BackoffPolicy` and
:func:`~spine_jobs.retry.is_retryable`:

    permanent, or attempts >= max_attempts  → dead_letter
    otherwise                              → queued, run_at = NextRetry(attempts)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import select, update

from .errors import ErrorContext, LeaseLostError
from .logging import get_logger
from .models import (
    ACTIVE_STATUSES,
    Failure,
    Job,
    JobEventType,
    JobStatus,
    Outcome,
    Success,
    validate_job_transition,
)
from .orm.tables import jobs_table
from .retry import BackoffPolicy, RetryClassifier, describe_error, is_retryable
from .store import CLAIM_ORDER, JobStore

logger = get_logger(__name__)

_c = jobs_table.c
_ACTIVE = sorted(s.value for s in ACTIVE_STATUSES)

# Candidates read per claim attempt; losing a CAS moves on to the next one
CLAIM_BATCH = 5


class LeaseManager:
    """Worker-side writes: claim, mark running, heartbeat, finalize.

    Args:
        store: Job store (shares engine, clock and lease timeout)
        backoff: Retry delay policy for transient failures
        classifier: Decides whether a failure is retryable
    """

    def __init__(
        self,
        store: JobStore,
        *,
        backoff: BackoffPolicy | None = None,
        classifier: RetryClassifier = is_retryable,
    ):
        self._store = store
        self.backoff = backoff or BackoffPolicy()
        self._classifier = classifier

    @property
    def store(self) -> JobStore:
        return self._store

    # ── Claim ────────────────────────────────────────────────────

    def claim(
        self,
        worker_id: str,
        lanes: str | Sequence[str] | None = None,
        owner_id: str | None = None,
    ) -> Job | None:
        """Atomically take the best claimable job, or return ``None``.

        Reclaiming an abandoned lease counts as a new attempt.
        """
        if isinstance(lanes, str):
            lanes = [lanes]
        store = self._store

        with store.transaction("claim") as conn:
            now = store.now()
            stmt = (
                select(jobs_table)
                .where(store.claimable_clause(now, lanes=lanes, owner_id=owner_id))
                .order_by(*CLAIM_ORDER)
                .limit(CLAIM_BATCH)
                .with_for_update(skip_locked=True)
            )
            candidates = [store.row_to_job(row) for row in conn.execute(stmt).all()]

            for seen in candidates:
                validate_job_transition(seen.status, JobStatus.CLAIMED)
                result = conn.execute(
                    update(jobs_table)
                    .where(
                        _c.id == seen.id,
                        _c.status == seen.status.value,
                        _c.attempts == seen.attempts,
                        _c.heartbeat_at.is_not_distinct_from(seen.heartbeat_at),
                    )
                    .values(
                        status=JobStatus.CLAIMED.value,
                        claimed_by=worker_id,
                        claimed_at=now,
                        heartbeat_at=now,
                        attempts=_c.attempts + 1,
                        next_retry_at=None,
                        updated_at=now,
                    )
                )
                if result.rowcount != 1:
                    continue

                reclaimed = seen.status in ACTIVE_STATUSES
                event_data: dict[str, Any] = {"attempt": seen.attempts + 1}
                if reclaimed:
                    event_data["previous_worker"] = seen.claimed_by
                store.record_event(
                    seen.id,
                    JobEventType.RECLAIMED if reclaimed else JobEventType.CLAIMED,
                    worker_id=worker_id,
                    data=event_data,
                    conn=conn,
                )

                job = seen
                job.status = JobStatus.CLAIMED
                job.claimed_by = worker_id
                job.claimed_at = now
                job.heartbeat_at = now
                job.attempts = seen.attempts + 1
                job.next_retry_at = None
                job.updated_at = now

                logger.info(
                    "job_reclaimed" if reclaimed else "job_claimed",
                    job_id=job.id,
                    kind=job.kind,
                    lane=job.lane,
                    worker_id=worker_id,
                    attempt=job.attempts,
                    previous_worker=event_data.get("previous_worker"),
                )
                return job
        return None

    # ── Lease upkeep ─────────────────────────────────────────────

    def mark_running(self, job_id: str, worker_id: str) -> bool:
        """claimed → running. ``False`` if the worker no longer holds the job."""
        store = self._store
        with store.transaction("mark_running") as conn:
            now = store.now()
            result = conn.execute(
                update(jobs_table)
                .where(
                    _c.id == job_id,
                    _c.status == JobStatus.CLAIMED.value,
                    _c.claimed_by == worker_id,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return False
            store.record_event(job_id, JobEventType.STARTED, worker_id=worker_id, conn=conn)
        return True

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh the lease. ``False`` means the lease is gone (reclaimed or canceled)."""
        store = self._store
        with store.transaction("heartbeat") as conn:
            now = store.now()
            result = conn.execute(
                update(jobs_table)
                .where(
                    _c.id == job_id,
                    _c.status.in_(_ACTIVE),
                    _c.claimed_by == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now)
            )
        return result.rowcount == 1

    def holds_lease(self, job_id: str, worker_id: str) -> bool:
        job = self._store.get_job(job_id)
        return job is not None and job.status in ACTIVE_STATUSES and job.claimed_by == worker_id

    def ensure_lease(self, job_id: str, worker_id: str) -> None:
        """Raise :class:`LeaseLostError` unless *worker_id* still holds *job_id*."""
        if not self.holds_lease(job_id, worker_id):
            raise LeaseLostError(
                f"Worker {worker_id!r} no longer holds job {job_id!r}",
                context=ErrorContext(job_id=job_id, worker_id=worker_id),
            )

    # ── Finalize ─────────────────────────────────────────────────

    def finalize(
        self,
        job_id: str,
        worker_id: str,
        outcome: Outcome,
        *,
        attempt: int | None = None,
    ) -> bool:
        """Apply the handler's outcome, if *worker_id* still holds the lease.

        Args:
            job_id: Job to finalize
            worker_id: Worker reporting the outcome
            outcome: :class:`Success` or :class:`Failure`
            attempt: Attempt the outcome belongs to; when given, a lease that
                was lost and re-won by the same worker id is not finalized twice

        Returns:
            ``True`` if the outcome was applied, ``False`` on lease loss
        """
        store = self._store
        with store.transaction("finalize") as conn:
            where = [
                _c.id == job_id,
                _c.status.in_(_ACTIVE),
                _c.claimed_by == worker_id,
            ]
            if attempt is not None:
                where.append(_c.attempts == attempt)
            row = conn.execute(select(jobs_table).where(*where)).first()
            if row is None:
                self._lease_lost(conn, job_id, worker_id, attempt)
                return False
            job = store.row_to_job(row)
            now = store.now()

            if isinstance(outcome, Success):
                changes: dict[str, Any] = {
                    "status": JobStatus.SUCCEEDED.value,
                    "last_result": outcome.result,
                    "finished_at": now,
                }
                event = JobEventType.SUCCEEDED
                event_data: dict[str, Any] = {"attempt": job.attempts}
            elif isinstance(outcome, Failure):
                changes, event, event_data = self._failure_changes(job, outcome, now)
            else:
                raise TypeError(f"outcome must be Success or Failure, got {type(outcome).__name__}")

            validate_job_transition(job.status, JobStatus(changes["status"]))
            changes.update(claimed_by=None, claimed_at=None, heartbeat_at=None, updated_at=now)
            result = conn.execute(
                update(jobs_table)
                .where(*where, _c.status == job.status.value, _c.attempts == job.attempts)
                .values(**changes)
            )
            if result.rowcount != 1:
                self._lease_lost(conn, job_id, worker_id, attempt)
                return False
            store.record_event(job_id, event, worker_id=worker_id, data=event_data, conn=conn)

        self._log_outcome(job, event, event_data, worker_id)
        return True

    def _failure_changes(
        self, job: Job, failure: Failure, now: Any
    ) -> tuple[dict[str, Any], JobEventType, dict[str, Any]]:
        error = failure.error
        retryable = failure.retryable
        if retryable is None:
            retryable = self._classifier(error)
        last_error = describe_error(
            error,
            attempt=job.attempts,
            retryable=retryable,
            retry_after=failure.retry_after,
        )

        if not retryable or job.attempts >= job.max_attempts:
            reason = "permanent_error" if not retryable else "max_attempts_exhausted"
            changes = {
                "status": JobStatus.DEAD_LETTER.value,
                "last_error": last_error,
                "next_retry_at": None,
                "finished_at": now,
            }
            return changes, JobEventType.DEAD_LETTERED, {
                "attempt": job.attempts,
                "reason": reason,
                "error": last_error["message"],
            }

        next_retry_at = self.backoff.next_retry(
            job.attempts, now=now, retry_after=last_error.get("retry_after")
        )
        changes = {
            "status": JobStatus.QUEUED.value,
            "last_error": last_error,
            "next_retry_at": next_retry_at,
            "run_at": next_retry_at,
        }
        return changes, JobEventType.RETRY_SCHEDULED, {
            "attempt": job.attempts,
            "next_retry_at": next_retry_at.isoformat(),
            "error": last_error["message"],
        }

    def _lease_lost(self, conn: Any, job_id: str, worker_id: str, attempt: int | None) -> None:
        exists = conn.execute(select(_c.id).where(_c.id == job_id)).first()
        if exists is not None:
            self._store.record_event(
                job_id,
                JobEventType.LEASE_LOST,
                worker_id=worker_id,
                data={"attempt": attempt},
                conn=conn,
            )
        logger.warning("lease_lost", job_id=job_id, worker_id=worker_id, attempt=attempt)

    @staticmethod
    def _log_outcome(job: Job, event: JobEventType, data: dict[str, Any], worker_id: str) -> None:
        fields = {"job_id": job.id, "kind": job.kind, "worker_id": worker_id, "attempt": job.attempts}
        if event is JobEventType.SUCCEEDED:
            logger.info("job_succeeded", **fields)
        elif event is JobEventType.RETRY_SCHEDULED:
            logger.warning(
                "job_retry_scheduled",
                next_retry_at=data["next_retry_at"],
                error=data["error"],
                **fields,
            )
        else:
            logger.error("job_dead_lettered", reason=data["reason"], error=data["error"], **fields)


__all__ = ["CLAIM_BATCH", "LeaseManager"]
