"""
Centralized settings for spine-jobs.

All fields can be set via ``SPINE_JOBS_*`` environment variables (e.g.
``SPINE_JOBS_LEASE_TIMEOUT_SECONDS=120``) or a ``.env`` file.  Values are
validated once at startup; :func:`get_settings` caches the result.

Tags:
    spine-jobs, configuration, settings, pydantic, environment
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LANES = ["realtime", "background", "nightly", "maintenance"]


class JobQueueSettings(BaseSettings):
    """spine-jobs configuration.

    Fields
    ──────
    database_url                 : SQLAlchemy URL for the job store
    lease_timeout_seconds        : Heartbeat age after which a claim is abandoned
    heartbeat_interval_seconds   : How often workers heartbeat (< lease timeout)
    poll_interval_seconds        : Base idle sleep between empty claims
    backoff_*                    : Retry backoff curve for transient failures
    default_*                    : Enqueue defaults
    lanes                        : Lanes a worker claims from when none are given
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINE_JOBS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///spine_jobs.db")
    database_echo: bool = Field(default=False)

    # ── Leases ───────────────────────────────────────────────────
    lease_timeout_seconds: float = Field(default=60.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    worker_alive_threshold_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)

    # ── Polling ──────────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    max_poll_interval_seconds: float = Field(default=10.0, gt=0)

    # ── Retry / backoff ──────────────────────────────────────────
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=600.0, ge=0)
    backoff_jitter_seconds: float = Field(default=1.0, ge=0)

    # ── Enqueue defaults ─────────────────────────────────────────
    default_max_attempts: int = Field(default=5, ge=1)
    default_priority: int = Field(default=0)
    default_lane: str = Field(default="background", min_length=1)

    # ── Worker ───────────────────────────────────────────────────
    lanes: list[str] = Field(default_factory=lambda: list(DEFAULT_LANES))
    worker_concurrency: int = Field(default=1, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    service_name: str = Field(default="spine-jobs")

    @model_validator(mode="after")
    def _validate_intervals(self) -> JobQueueSettings:
        if self.heartbeat_interval_seconds >= self.lease_timeout_seconds:
            raise ValueError(
                "heartbeat_interval_seconds must be strictly less than lease_timeout_seconds "
                f"({self.heartbeat_interval_seconds} >= {self.lease_timeout_seconds})"
            )
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            raise ValueError("max_poll_interval_seconds must be >= poll_interval_seconds")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def json_logs(self) -> bool:
        return self.log_format.lower() == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, JobQueueSettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: object) -> JobQueueSettings:
    """Load, validate, and cache a :class:`JobQueueSettings` instance.

    Keyword overrides bypass the cache and win over environment values.
    """
    if overrides:
        return JobQueueSettings(**overrides)
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = JobQueueSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Drop the cached settings (tests, config reload)."""
    _settings_cache.clear()


__all__ = ["DEFAULT_LANES", "JobQueueSettings", "get_settings", "clear_settings_cache"]
