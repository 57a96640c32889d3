"""Tests for job domain models and the status state machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from spine_jobs.errors import InvalidTransitionError
from spine_jobs.models import (
    ACTIVE_STATUSES,
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    EnqueueResult,
    HealthCounts,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    WorkerHeartbeat,
    validate_job_transition,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class TestStatusSets:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {JobStatus.SUCCEEDED, JobStatus.DEAD_LETTER, JobStatus.CANCELED}

    def test_non_terminal_statuses_hold_dedupe_keys(self):
        assert JobStatus.QUEUED in NON_TERMINAL_STATUSES
        assert JobStatus.RUNNING in NON_TERMINAL_STATUSES
        assert not NON_TERMINAL_STATUSES & TERMINAL_STATUSES

    def test_active_statuses(self):
        assert ACTIVE_STATUSES == {JobStatus.CLAIMED, JobStatus.RUNNING}


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.QUEUED, JobStatus.CLAIMED),
            (JobStatus.CLAIMED, JobStatus.RUNNING),
            (JobStatus.CLAIMED, JobStatus.CLAIMED),
            (JobStatus.RUNNING, JobStatus.QUEUED),
            (JobStatus.RUNNING, JobStatus.DEAD_LETTER),
            (JobStatus.RUNNING, JobStatus.CANCELED),
            (JobStatus.DEAD_LETTER, JobStatus.QUEUED),
            (JobStatus.FAILED, JobStatus.QUEUED),
        ],
    )
    def test_allowed(self, current, target):
        validate_job_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.SUCCEEDED, JobStatus.QUEUED),
            (JobStatus.CANCELED, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.SUCCEEDED),
            (JobStatus.DEAD_LETTER, JobStatus.RUNNING),
        ],
    )
    def test_forbidden(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_job_transition(current, target)


class TestJob:
    def test_create_defaults(self):
        job = Job.create("user-1", "email_sync", {"mailbox": "inbox"}, now=NOW)
        assert job.status is JobStatus.QUEUED
        assert job.attempts == 0
        assert job.run_at == NOW
        assert job.created_at == NOW
        assert job.payload == {"mailbox": "inbox"}
        assert len(job.id) == 36

    def test_create_generates_distinct_ids(self):
        assert Job.create("u", "k").id != Job.create("u", "k").id

    def test_lease_expired(self):
        job = Job.create("u", "k", now=NOW, status=JobStatus.RUNNING, heartbeat_at=NOW)
        assert not job.lease_expired(NOW + timedelta(seconds=30), 30)
        assert job.lease_expired(NOW + timedelta(seconds=31), 30)

    def test_queued_job_has_no_lease(self):
        job = Job.create("u", "k", now=NOW, heartbeat_at=NOW)
        assert not job.lease_expired(NOW + timedelta(days=1), 30)
        assert not job.holds_lease

    def test_attempts_left(self):
        job = Job.create("u", "k", attempts=3, max_attempts=3)
        assert job.attempts_left == 0

    def test_to_dict_serializes_status_and_times(self):
        data = Job.create("u", "k", now=NOW).to_dict()
        assert data["status"] == "queued"
        assert data["run_at"] == NOW.isoformat()
        assert data["finished_at"] is None


class TestResults:
    def test_enqueue_result_to_dict(self):
        assert EnqueueResult(job_id="j-1", deduped=True).to_dict() == {
            "job_id": "j-1",
            "deduped": True,
        }

    def test_health_counts_flat_dict(self):
        counts = HealthCounts(counts={"queued": 2, "running": 1}, worker_alive=False)
        assert counts.total == 3
        assert counts.to_dict() == {"queued": 2, "running": 1, "worker_alive": False}

    def test_event_to_dict(self):
        event = JobEvent(job_id="j-1", event_type=JobEventType.CLAIMED, timestamp=NOW, id=4)
        assert event.to_dict()["event_type"] == "claimed"
        assert event.to_dict()["id"] == 4

    def test_worker_is_alive(self):
        worker = WorkerHeartbeat(worker_id="w-1", last_seen_at=NOW)
        assert worker.is_alive(NOW + timedelta(seconds=59), 60)
        assert not worker.is_alive(NOW + timedelta(seconds=60), 60)
