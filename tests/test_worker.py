"""
Tests for the WorkerLoop: handler dispatch, Finalize outcomes and the loop.

``run_once`` drives one claim → run → finalize cycle synchronously; the
background tests start the real loop in a thread with a short poll interval.
"""

from __future__ import annotations

import random
import threading
import time

import pydantic
import pytest

from spine_jobs.errors import PermanentHandlerError, RateLimitedError, TransientHandlerError
from spine_jobs.models import JobStatus
from spine_jobs.worker import WorkerLoop, get_active_workers, get_worker_stats


class EmailSync(pydantic.BaseModel):
    mailbox: str


class SyncResult(pydantic.BaseModel):
    mailbox: str
    messages: int


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture()
def worker(queue):
    return WorkerLoop(queue, worker_id="worker-1", lanes=["background"], sweep_interval=0)


# ── Construction ─────────────────────────────────────────────────────────


class TestConstruction:
    def test_defaults_from_settings(self, queue):
        loop = WorkerLoop(queue)
        assert loop.lanes == queue.settings.lanes
        assert loop.worker_id.startswith("worker-")
        assert loop.info.concurrency == 1

    def test_single_lane_string(self, queue):
        assert WorkerLoop(queue, lanes="realtime").lanes == ["realtime"]

    def test_heartbeat_must_beat_lease(self, queue):
        with pytest.raises(ValueError, match="lease timeout"):
            WorkerLoop(queue, heartbeat_interval=queue.store.lease_timeout_seconds)

    def test_idle_delay_bounds(self, queue):
        loop = WorkerLoop(
            queue, poll_interval=1.0, max_poll_interval=8.0, rng=random.Random(3)
        )
        for idle in range(1, 10):
            ceiling = min(1.0 * 2 ** (idle - 1), 8.0)
            delay = loop.idle_delay(idle)
            assert ceiling / 2 <= delay <= ceiling


# ── run_once ─────────────────────────────────────────────────────────────


class TestRunOnce:
    def test_nothing_claimable(self, worker):
        assert worker.run_once() is None

    def test_success(self, queue, registry, worker):
        seen = {}

        @registry.handler("noop")
        def noop(payload, ctx):
            seen["payload"] = payload
            seen["attempt"] = ctx.attempt
            seen["worker"] = ctx.worker_id
            return {"ok": True}

        job_id = queue.enqueue("user-1", "noop", {"n": 1}).job_id
        job = worker.run_once()

        assert job.id == job_id
        assert job.status is JobStatus.SUCCEEDED
        assert job.last_result == {"ok": True}
        assert seen == {"payload": {"n": 1}, "attempt": 1, "worker": "worker-1"}
        assert worker.get_stats().total_succeeded == 1

    def test_typed_payload_and_result(self, queue, registry, worker):
        @registry.handler("email_sync", payload_schema=EmailSync)
        def email_sync(payload: EmailSync, ctx):
            assert isinstance(payload, EmailSync)
            return SyncResult(mailbox=payload.mailbox, messages=3)

        queue.enqueue("user-1", "email_sync", {"mailbox": "inbox"})
        job = worker.run_once()
        assert job.last_result == {"mailbox": "inbox", "messages": 3}

    def test_transient_failure_requeued(self, queue, registry, worker):
        @registry.handler("flaky")
        def flaky(payload, ctx):
            raise TransientHandlerError("upstream timed out")

        queue.enqueue("user-1", "flaky")
        job = worker.run_once()
        assert job.status is JobStatus.QUEUED
        assert job.attempts == 1
        assert job.last_error["message"] == "upstream timed out"
        assert worker.get_stats().total_retried == 1

    def test_rate_limit_delays_retry(self, queue, registry, worker, clock):
        @registry.handler("limited")
        def limited(payload, ctx):
            raise RateLimitedError(retry_after=300)

        queue.enqueue("user-1", "limited")
        job = worker.run_once()
        assert (job.next_retry_at - clock()).total_seconds() == 300

    def test_permanent_failure_dead_lettered(self, queue, registry, worker):
        @registry.handler("broken")
        def broken(payload, ctx):
            raise PermanentHandlerError("credentials revoked")

        queue.enqueue("user-1", "broken")
        job = worker.run_once()
        assert job.status is JobStatus.DEAD_LETTER
        assert job.attempts == 1
        assert worker.get_stats().total_dead_lettered == 1

    def test_missing_handler_dead_lettered(self, queue, worker):
        queue.enqueue("user-1", "unknown_kind")
        job = worker.run_once()
        assert job.status is JobStatus.DEAD_LETTER
        assert job.last_error["type"] == "HandlerNotFoundError"

    def test_invalid_stored_payload_dead_lettered(self, queue, registry, worker):
        queue.enqueue("user-1", "email_sync", {"folder": "inbox"})
        registry.register("email_sync", lambda p, c: None, payload_schema=EmailSync)
        job = worker.run_once()
        assert job.status is JobStatus.DEAD_LETTER
        assert job.last_error["category"] == "VALIDATION"

    def test_retries_until_success(self, queue, registry, worker, clock):
        calls = []

        @registry.handler("flaky")
        def flaky(payload, ctx):
            calls.append(ctx.attempt)
            if len(calls) < 3:
                raise ConnectionResetError("reset by peer")
            return "done"

        job_id = queue.enqueue("user-1", "flaky").job_id
        for _ in range(3):
            job = worker.run_once()
            if job.next_retry_at is not None:
                clock.advance(seconds=(job.next_retry_at - clock()).total_seconds())

        final = queue.get_job(job_id)
        assert final.status is JobStatus.SUCCEEDED
        assert final.attempts == 3
        assert calls == [1, 2, 3]

    def test_cooperative_cancel(self, queue, registry, worker):
        observed = {}

        @registry.handler("long")
        def long_running(payload, ctx):
            queue.cancel(ctx.job_id, ctx.owner_id, reason="user request")
            observed["heartbeat"] = ctx.heartbeat()
            observed["cancelled"] = ctx.is_cancelled()
            ctx.raise_if_cancelled()
            return "unreachable"

        queue.enqueue("user-1", "long")
        job = worker.run_once()

        assert observed == {"heartbeat": False, "cancelled": True}
        assert job.status is JobStatus.CANCELED
        assert job.cancel_reason == "user request"
        assert worker.get_stats().total_lease_lost == 1
        assert worker.get_stats().by_kind["long"]["lease_lost"] == 1

    def test_heartbeat_store_failure_does_not_fail_job(
        self, queue, registry, worker, break_store, monkeypatch
    ):
        @registry.handler("long")
        def long_running(payload, ctx):
            break_store()
            try:
                beat = ctx.heartbeat()
            finally:
                monkeypatch.undo()
            return {"beat": beat}

        queue.enqueue("user-1", "long")
        job = worker.run_once()

        assert job.status is JobStatus.SUCCEEDED
        assert job.attempts == 1
        assert job.last_result == {"beat": True}

    def test_only_own_lanes(self, queue, registry):
        registry.register("noop", lambda p, c: None)
        queue.enqueue("user-1", "noop", lane="nightly")
        loop = WorkerLoop(queue, lanes=["realtime"], sweep_interval=0)
        assert loop.run_once() is None

    def test_owner_scoped_worker(self, queue, registry):
        registry.register("noop", lambda p, c: None)
        queue.enqueue("user-2", "noop")
        loop = WorkerLoop(queue, owner_id="user-1", sweep_interval=0)
        assert loop.run_once() is None


# ── Metrics ──────────────────────────────────────────────────────────────


class TestKindMetrics:
    def test_per_kind_outcomes(self, queue, registry, worker):
        registry.register("noop", lambda p, c: "ok")

        @registry.handler("broken")
        def broken(payload, ctx):
            raise PermanentHandlerError("credentials revoked")

        @registry.handler("flaky")
        def flaky(payload, ctx):
            raise TransientHandlerError("upstream timed out")

        for kind in ("noop", "noop", "broken", "flaky"):
            queue.enqueue("user-1", kind)
        for _ in range(4):
            worker.run_once()

        by_kind = worker.get_stats().by_kind
        assert set(by_kind) == {"noop", "broken", "flaky"}
        assert by_kind["noop"]["started"] == 2
        assert by_kind["noop"]["succeeded"] == 2
        assert by_kind["noop"]["duration_seconds"]["count"] == 2
        assert by_kind["broken"]["dead_lettered"] == 1
        assert by_kind["flaky"]["retried"] == 1
        assert all(entry["active"] == 0 for entry in by_kind.values())

    def test_active_while_handler_runs(self, queue, registry, worker):
        seen = {}

        @registry.handler("noop")
        def noop(payload, ctx):
            seen["active"] = worker.metrics.snapshot()["noop"]["active"]

        queue.enqueue("user-1", "noop")
        worker.run_once()
        assert seen == {"active": 1}
        assert worker.metrics.snapshot()["noop"]["active"] == 0

    def test_stats_dict_carries_kinds(self, queue, registry, worker):
        registry.register("noop", lambda p, c: None)
        queue.enqueue("user-1", "noop")
        worker.run_once()
        assert worker.get_stats().to_dict()["by_kind"]["noop"]["succeeded"] == 1

    def test_prometheus_export(self, queue, registry, worker):
        registry.register("noop", lambda p, c: None)
        queue.enqueue("user-1", "noop")
        worker.run_once()
        text = worker.metrics.registry.export_prometheus()
        assert 'spine_jobs_completed_total{kind="noop",outcome="succeeded"} 1.0' in text


# ── Background loop ──────────────────────────────────────────────────────


class TestBackgroundLoop:
    def test_processes_jobs_until_stopped(self, queue, registry):
        done = threading.Event()

        @registry.handler("noop")
        def noop(payload, ctx):
            if payload["n"] == 4:
                done.set()
            return payload["n"]

        for n in range(5):
            queue.enqueue("user-1", "noop", {"n": n})

        loop = WorkerLoop(queue, worker_id="bg-worker", concurrency=2, sweep_interval=0)
        thread = loop.start_background()
        try:
            assert _wait_for(lambda: queue.health_counts().counts["succeeded"] == 5)
            assert done.is_set()
            assert "bg-worker" in [w.worker_id for w in get_active_workers()]
            assert get_worker_stats()
        finally:
            loop.stop()
            thread.join(timeout=10)

        assert not thread.is_alive()
        assert loop.info.status == "stopped"
        assert loop.get_stats().total_succeeded == 5
        assert loop.get_stats().by_kind["noop"]["succeeded"] == 5
        assert "bg-worker" not in [w.worker_id for w in get_active_workers()]

    def test_registers_worker_heartbeat(self, queue):
        loop = WorkerLoop(queue, worker_id="bg-worker", sweep_interval=0)
        thread = loop.start_background()
        try:
            assert _wait_for(lambda: queue.health_counts().worker_alive)
            (worker,) = queue.list_workers()
            assert worker.worker_id == "bg-worker"
            assert worker.lanes == loop.lanes
        finally:
            loop.stop()
            thread.join(timeout=10)

    def test_periodic_sweep(self, queue, clock):
        job_id = queue.enqueue("user-1", "noop", max_attempts=1).job_id
        queue.claim("crashed-worker")
        clock.advance(seconds=31)

        loop = WorkerLoop(queue, lanes=["nightly"], sweep_interval=0.01)
        thread = loop.start_background()
        try:
            assert _wait_for(lambda: queue.get_job(job_id).status is JobStatus.DEAD_LETTER)
        finally:
            loop.stop()
            thread.join(timeout=10)
