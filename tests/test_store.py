"""
Tests for Enqueue, dedupe and the read-side queries.

Every test runs against a file-backed SQLite database so the partial
unique index and the multi-connection behaviour are the real thing.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pydantic
import pytest
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from spine_jobs.errors import ErrorCategory, NotFoundError, StoreError, ValidationError
from spine_jobs.models import EnqueueOptions, JobEventType, JobStatus, Success


class EmailSync(pydantic.BaseModel):
    mailbox: str


# ── Enqueue ──────────────────────────────────────────────────────────────


class TestEnqueue:
    def test_enqueue_defaults(self, queue, clock):
        result = queue.enqueue("user-1", "noop", {"a": 1})
        assert result.deduped is False

        job = queue.get_job(result.job_id)
        assert job.status is JobStatus.QUEUED
        assert job.owner_id == "user-1"
        assert job.payload == {"a": 1}
        assert job.priority == 0
        assert job.lane == "background"
        assert job.max_attempts == 5
        assert job.attempts == 0
        assert job.run_at == clock()
        assert job.next_retry_at is None

    def test_enqueue_options_object(self, queue, clock):
        run_at = clock() + timedelta(minutes=5)
        opts = EnqueueOptions(run_at=run_at, priority=7, lane="realtime", max_attempts=2)
        job = queue.get_job(queue.enqueue("user-1", "noop", options=opts).job_id)
        assert (job.run_at, job.priority, job.lane, job.max_attempts) == (run_at, 7, "realtime", 2)

    def test_keywords_win_over_options(self, queue):
        opts = EnqueueOptions(priority=1)
        job = queue.get_job(queue.enqueue("user-1", "noop", options=opts, priority=9).job_id)
        assert job.priority == 9

    def test_naive_run_at_is_utc(self, queue, clock):
        naive = clock().replace(tzinfo=None) + timedelta(hours=1)
        job = queue.get_job(queue.enqueue("user-1", "noop", run_at=naive).job_id)
        assert job.run_at == clock() + timedelta(hours=1)

    def test_enqueued_event_recorded(self, queue):
        job_id = queue.enqueue("user-1", "noop", priority=3).job_id
        events = queue.get_events(job_id)
        assert [e.event_type for e in events] == [JobEventType.ENQUEUED]
        assert events[0].data["priority"] == 3

    def test_payload_model_accepted(self, queue, registry):
        registry.register("email_sync", lambda p, c: None, payload_schema=EmailSync)
        job_id = queue.enqueue("user-1", "email_sync", EmailSync(mailbox="inbox")).job_id
        assert queue.get_job(job_id).payload == {"mailbox": "inbox"}


class TestEnqueueValidation:
    @pytest.mark.parametrize(
        ("args", "kwargs", "field"),
        [
            (("", "noop"), {}, "owner_id"),
            (("user-1", "  "), {}, "kind"),
            (("user-1", "noop"), {"priority": "high"}, "priority"),
            (("user-1", "noop"), {"max_attempts": 0}, "max_attempts"),
            (("user-1", "noop"), {"lane": ""}, "lane"),
            (("user-1", "noop"), {"dedupe_key": ""}, "dedupe_key"),
            (("user-1", "noop", ["not", "a", "mapping"]), {}, "payload"),
        ],
    )
    def test_rejected_before_write(self, queue, args, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            queue.enqueue(*args, **kwargs)
        assert exc_info.value.field == field
        assert queue.health_counts().total == 0

    def test_payload_schema_enforced(self, queue, registry):
        registry.register("email_sync", lambda p, c: None, payload_schema=EmailSync)
        with pytest.raises(ValidationError) as exc_info:
            queue.enqueue("user-1", "email_sync", {"folder": "inbox"})
        assert exc_info.value.errors[0]["loc"] == ["mailbox"]
        assert queue.health_counts().total == 0


# ── Dedupe ───────────────────────────────────────────────────────────────


class TestDedupe:
    def test_same_key_returns_same_job(self, queue):
        first = queue.enqueue("user-1", "email_sync", {"n": 1}, dedupe_key="inbox")
        second = queue.enqueue("user-1", "email_sync", {"n": 2}, dedupe_key="inbox")
        assert second.deduped is True
        assert second.job_id == first.job_id
        assert queue.get_job(first.job_id).payload == {"n": 1}
        assert queue.health_counts().counts["queued"] == 1

    def test_key_scoped_per_owner(self, queue):
        a = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        b = queue.enqueue("user-2", "email_sync", dedupe_key="inbox")
        assert a.job_id != b.job_id
        assert not b.deduped

    def test_held_while_running(self, queue):
        first = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        queue.claim("worker-1")
        queue.mark_running(first.job_id, "worker-1")
        again = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        assert again.deduped and again.job_id == first.job_id

    def test_released_after_success(self, queue):
        first = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        queue.claim("worker-1")
        assert queue.finalize(first.job_id, "worker-1", Success())
        again = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        assert again.deduped is False
        assert again.job_id != first.job_id

    def test_released_after_cancel(self, queue):
        first = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        queue.cancel(first.job_id, "user-1")
        again = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
        assert not again.deduped

    def test_concurrent_producers_get_one_row(self, queue):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def produce():
            barrier.wait()
            result = queue.enqueue("user-1", "email_sync", dedupe_key="inbox")
            with lock:
                results.append(result)

        threads = [threading.Thread(target=produce) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == 6
        assert len({r.job_id for r in results}) == 1
        assert sum(not r.deduped for r in results) == 1
        assert queue.health_counts().total == 1


# ── Reads ────────────────────────────────────────────────────────────────


class TestGetJob:
    def test_unknown_job(self, queue):
        with pytest.raises(NotFoundError):
            queue.get_job("nope")

    def test_foreign_owner(self, queue):
        job_id = queue.enqueue("user-1", "noop").job_id
        with pytest.raises(NotFoundError):
            queue.get_job(job_id, owner_id="user-2")
        assert queue.get_job(job_id, owner_id="user-1").id == job_id


class TestGetNext:
    def test_highest_priority_first(self, queue):
        queue.enqueue("user-1", "noop", priority=0)
        urgent = queue.enqueue("user-1", "email_sync", priority=10).job_id
        assert queue.get_next("user-1").id == urgent

    def test_read_only(self, queue):
        job_id = queue.enqueue("user-1", "noop").job_id
        queue.get_next("user-1")
        queue.get_next("user-1")
        job = queue.get_job(job_id)
        assert job.status is JobStatus.QUEUED
        assert job.attempts == 0

    def test_future_jobs_not_next(self, queue, clock):
        queue.enqueue("user-1", "noop", run_at=clock() + timedelta(minutes=1))
        assert queue.get_next("user-1") is None
        clock.advance(seconds=60)
        assert queue.get_next("user-1") is not None

    def test_scoped_to_owner_and_lane(self, queue):
        queue.enqueue("user-2", "noop")
        job_id = queue.enqueue("user-1", "noop", lane="nightly").job_id
        assert queue.get_next("user-1", lane="realtime") is None
        assert queue.get_next("user-1", lane="nightly").id == job_id


class TestListUpcoming:
    def test_soonest_first(self, queue, clock):
        later = queue.enqueue("user-1", "noop", run_at=clock() + timedelta(hours=2)).job_id
        sooner = queue.enqueue("user-1", "noop", run_at=clock() + timedelta(hours=1)).job_id
        now = queue.enqueue("user-1", "noop").job_id
        assert [j.id for j in queue.list_upcoming("user-1")] == [now, sooner, later]

    def test_status_filter_and_limit(self, queue):
        ids = [queue.enqueue("user-1", "noop").job_id for _ in range(3)]
        queue.cancel(ids[0], "user-1")
        assert len(queue.list_upcoming("user-1", limit=2)) == 2
        canceled = queue.list_upcoming("user-1", statuses=["canceled"])
        assert [j.id for j in canceled] == [ids[0]]

    def test_default_hides_terminal_jobs(self, queue):
        job_id = queue.enqueue("user-1", "noop").job_id
        queue.cancel(job_id, "user-1")
        assert queue.list_upcoming("user-1") == []

    def test_other_owners_hidden(self, queue):
        queue.enqueue("user-2", "noop")
        assert queue.list_upcoming("user-1") == []

    def test_bad_arguments(self, queue):
        with pytest.raises(ValidationError):
            queue.list_upcoming("user-1", statuses=["sleeping"])
        with pytest.raises(ValidationError):
            queue.list_upcoming("user-1", limit=0)


class TestEvents:
    def test_full_history_in_order(self, queue):
        job_id = queue.enqueue("user-1", "noop").job_id
        queue.claim("worker-1")
        queue.mark_running(job_id, "worker-1")
        queue.finalize(job_id, "worker-1", Success({"ok": True}))
        types = [e.event_type for e in queue.get_events(job_id)]
        assert types == [
            JobEventType.ENQUEUED,
            JobEventType.CLAIMED,
            JobEventType.STARTED,
            JobEventType.SUCCEEDED,
        ]

    def test_owner_check(self, queue):
        job_id = queue.enqueue("user-1", "noop").job_id
        with pytest.raises(NotFoundError):
            queue.get_events(job_id, owner_id="user-2")


class TestStatusCounts:
    def test_zero_filled(self, queue):
        counts = queue.health_counts().counts
        assert set(counts) == {s.value for s in JobStatus}
        assert all(v == 0 for v in counts.values())

    def test_owner_scoped(self, queue):
        queue.enqueue("user-1", "noop")
        queue.enqueue("user-1", "noop")
        queue.enqueue("user-2", "noop")
        assert queue.health_counts("user-1").counts["queued"] == 2
        assert queue.health_counts().counts["queued"] == 3


def test_store_times_are_aware(queue):
    job = queue.get_job(queue.enqueue("user-1", "noop").job_id)
    assert isinstance(job.created_at, datetime)
    assert job.created_at.tzinfo is not None


# ── Store failures ───────────────────────────────────────────────────────


class TestStoreFailures:
    """Database errors surface as retryable StoreError, never raw SQLAlchemy errors."""

    def test_enqueue(self, queue, break_store):
        break_store()
        with pytest.raises(StoreError) as exc_info:
            queue.enqueue("user-1", "noop")
        assert exc_info.value.retryable
        assert exc_info.value.category == ErrorCategory.STORAGE
        assert isinstance(exc_info.value.__cause__, OperationalError)

    def test_enqueue_with_dedupe_key(self, queue, break_store):
        break_store()
        with pytest.raises(StoreError):
            queue.enqueue("user-1", "noop", dedupe_key="inbox")

    def test_claim(self, queue, break_store):
        queue.enqueue("user-1", "noop")
        break_store()
        with pytest.raises(StoreError, match="claim failed"):
            queue.claim("worker-1")

    def test_finalize(self, queue, break_store):
        job_id = queue.enqueue("user-1", "noop").job_id
        queue.claim("worker-1")
        break_store()
        with pytest.raises(StoreError, match="finalize failed"):
            queue.finalize(job_id, "worker-1", Success("done"))

    def test_reads(self, queue, break_store):
        job_id = queue.enqueue("user-1", "noop").job_id
        break_store()
        with pytest.raises(StoreError):
            queue.get_job(job_id)
        with pytest.raises(StoreError):
            queue.health_counts()

    def test_heartbeat_is_best_effort(self, queue, break_store):
        job_id = queue.enqueue("user-1", "noop").job_id
        queue.claim("worker-1")
        break_store()
        with capture_logs() as logs:
            assert queue.heartbeat(job_id, "worker-1") is True
        (entry,) = logs
        assert entry["event"] == "heartbeat_failed"
        assert entry["log_level"] == "warning"
        assert entry["job_id"] == job_id
