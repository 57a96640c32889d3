"""Tests for the per-kind metrics primitives and JobMetrics."""

from __future__ import annotations

import pytest

from spine_jobs.metrics import Counter, Gauge, Histogram, JobMetrics, MetricsRegistry


class TestPrimitives:
    def test_counter_per_label_set(self):
        c = Counter("jobs_total")
        c.inc(kind="a")
        c.inc(2, kind="a")
        c.inc(kind="b")
        assert c.value(kind="a") == 3
        assert c.value(kind="b") == 1
        assert c.value(kind="missing") == 0

    def test_counter_rejects_decrease(self):
        with pytest.raises(ValueError, match="only increase"):
            Counter("jobs_total").inc(-1)

    def test_gauge_up_and_down(self):
        g = Gauge("active")
        g.inc(kind="a")
        g.inc(kind="a")
        g.dec(kind="a")
        assert g.value(kind="a") == 1
        g.set(7, kind="a")
        assert g.value(kind="a") == 7

    def test_histogram_buckets_are_cumulative(self):
        h = Histogram("duration", buckets=(1.0, 5.0, float("inf")))
        h.observe(0.5, kind="a")
        h.observe(3.0, kind="a")
        h.observe(10.0, kind="a")
        data = h.data(kind="a")
        assert data["count"] == 3
        assert data["sum"] == 13.5
        assert data["buckets"] == {1.0: 1, 5.0: 2, float("inf"): 3}

    def test_histogram_time(self):
        h = Histogram("duration")
        with h.time(kind="a"):
            pass
        assert h.data(kind="a")["count"] == 1

    def test_histogram_time_records_on_error(self):
        h = Histogram("duration")
        with pytest.raises(RuntimeError):
            with h.time(kind="a"):
                raise RuntimeError("boom")
        assert h.data(kind="a")["count"] == 1


class TestRegistry:
    def test_get_or_create(self):
        reg = MetricsRegistry()
        assert reg.counter("jobs_total") is reg.counter("jobs_total")
        assert reg.histogram("duration") is reg.histogram("duration")

    def test_collect(self):
        reg = MetricsRegistry()
        reg.counter("jobs_total").inc(kind="a")
        reg.gauge("active").set(2)
        collected = {(m["name"], m["type"]) for m in reg.collect()}
        assert collected == {("jobs_total", "counter"), ("active", "gauge")}

    def test_export_prometheus(self):
        reg = MetricsRegistry()
        reg.counter("jobs_total").inc(kind="a")
        reg.histogram("duration", buckets=(1.0, float("inf"))).observe(0.5, kind="a")
        text = reg.export_prometheus().splitlines()
        assert 'jobs_total{kind="a"} 1.0' in text
        assert 'duration_bucket{kind="a",le="1.0"} 1' in text
        assert 'duration_bucket{kind="a",le="+Inf"} 1' in text
        assert 'duration_sum{kind="a"} 0.5' in text
        assert 'duration_count{kind="a"} 1' in text


class TestJobMetrics:
    def test_running_counts_and_times(self):
        metrics = JobMetrics()
        with metrics.running("email_sync"):
            assert metrics.snapshot()["email_sync"]["active"] == 1
        metrics.record_outcome("email_sync", "succeeded")

        entry = metrics.snapshot()["email_sync"]
        assert entry["started"] == 1
        assert entry["active"] == 0
        assert entry["succeeded"] == 1
        assert entry["retried"] == 0
        assert entry["duration_seconds"]["count"] == 1

    def test_running_releases_active_on_error(self):
        metrics = JobMetrics()
        with pytest.raises(RuntimeError):
            with metrics.running("email_sync"):
                raise RuntimeError("boom")
        assert metrics.snapshot()["email_sync"]["active"] == 0

    def test_outcome_without_run(self):
        metrics = JobMetrics()
        metrics.record_outcome("email_sync", "lease_lost")
        entry = metrics.snapshot()["email_sync"]
        assert entry["lease_lost"] == 1
        assert entry["started"] == 0

    def test_unknown_outcome(self):
        with pytest.raises(ValueError, match="unknown outcome"):
            JobMetrics().record_outcome("email_sync", "exploded")

    def test_shared_registry(self):
        reg = MetricsRegistry()
        first = JobMetrics(reg)
        second = JobMetrics(reg)
        first.record_outcome("a", "succeeded")
        assert second.completed.value(kind="a", outcome="succeeded") == 1
        assert second.snapshot() == {}
