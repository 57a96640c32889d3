"""
Tests for the logging module.

Tests verify:
- JSON lines carry ECS field names and the service name
- Scoped LogContext binds and unbinds job fields
- Records below the configured level are dropped
"""

import io
import json

import structlog

from spine_jobs.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestConfigureLogging:
    """JSON rendering into an explicit stream."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_json_lines_with_ecs_names(self):
        stream = io.StringIO()
        configure_logging(level="INFO", json_format=True, service="jobs-test", stream=stream)
        get_logger("spine_jobs.test").info("job_enqueued", job_id="j-1")

        (record,) = _lines(stream)
        assert record["event"] == "job_enqueued"
        assert record["job_id"] == "j-1"
        assert record["log.level"] == "info"
        assert record["service.name"] == "jobs-test"
        assert record["log.logger"] == "spine_jobs.test"
        assert "@timestamp" in record

    def test_level_filtering(self):
        stream = io.StringIO()
        configure_logging(level="WARNING", json_format=True, stream=stream)
        logger = get_logger()
        logger.info("quiet")
        logger.warning("loud")

        assert [r["event"] for r in _lines(stream)] == ["loud"]

    def test_without_timestamp(self):
        stream = io.StringIO()
        configure_logging(json_format=True, add_timestamp=False, stream=stream)
        get_logger().info("tick")
        assert "@timestamp" not in _lines(stream)[0]


class TestContext:
    """Context variables merged into every line."""

    def setup_method(self):
        clear_context()
        self.stream = io.StringIO()
        configure_logging(json_format=True, stream=self.stream, cache_loggers=False)

    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_log_context_scopes_fields(self):
        logger = get_logger()
        with LogContext(job_id="j-1", worker_id="worker-1"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _lines(self.stream)
        assert inside["job_id"] == "j-1"
        assert inside["worker_id"] == "worker-1"
        assert "job_id" not in outside

    def test_bind_and_unbind(self):
        logger = get_logger()
        bind_context(attempt=2)
        logger.info("bound")
        unbind_context("attempt")
        logger.info("unbound")

        bound, unbound = _lines(self.stream)
        assert bound["attempt"] == 2
        assert "attempt" not in unbound


class TestPackageLoggers:
    """Module-level loggers stay lazy until the first call."""

    def teardown_method(self):
        structlog.reset_defaults()

    def test_package_imports_with_module_loggers(self):
        import spine_jobs
        from spine_jobs import claim, heartbeat, worker

        assert spine_jobs.__version__
        assert claim.logger is not None
        assert heartbeat.logger is not None
        assert worker.logger is not None

    def test_configured_after_creation(self):
        logger = get_logger("x")
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream, cache_loggers=False)
        logger.warning("late_configured", job_id="j-2")

        (record,) = _lines(stream)
        assert record["event"] == "late_configured"
        assert record["log.logger"] == "x"
