"""Job store table definitions — jobs, job events, worker heartbeats.

Indices:
    ix_jobs_claim           (status, lane, priority, run_at)  — claim scan
    ix_jobs_owner_status    (owner_id, status, run_at)        — per-owner reads
    ix_jobs_lease           (status, heartbeat_at)            — abandoned-lease sweep
    uq_jobs_owner_dedupe    UNIQUE (owner_id, dedupe_key)
                            WHERE dedupe_key IS NOT NULL
                              AND status NOT IN (terminal)    — dedupe index

The dedupe index is partial so a key is released as soon as the job holding
it reaches a terminal status; a later Enqueue with the same key inserts a
fresh row.

Tags:
    spine-jobs, orm, sqlalchemy, tables, schema

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spine_jobs.models import TERMINAL_STATUSES
from spine_jobs.orm.base import JobsBase

_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))
_DEDUPE_WHERE = text(f"dedupe_key IS NOT NULL AND status NOT IN ({_TERMINAL_SQL})")


class JobTable(JobsBase):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, default=None)
    status: Mapped[str] = mapped_column(Text, default="queued", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lane: Mapped[str] = mapped_column(Text, default="background", nullable=False)
    run_at: Mapped[datetime.datetime] = mapped_column(nullable=False)
    next_retry_at: Mapped[datetime.datetime | None] = mapped_column()
    dedupe_key: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(Text)
    claimed_at: Mapped[datetime.datetime | None] = mapped_column()
    heartbeat_at: Mapped[datetime.datetime | None] = mapped_column()
    last_error: Mapped[dict | None] = mapped_column(JSON)
    last_result: Mapped[Any | None] = mapped_column(JSON)
    created_at: Mapped[datetime.datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(nullable=False)
    started_at: Mapped[datetime.datetime | None] = mapped_column()
    finished_at: Mapped[datetime.datetime | None] = mapped_column()
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    # --- relationships ---
    events: Mapped[list[JobEventTable]] = relationship(
        "JobEventTable", back_populates="job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_jobs_claim", "status", "lane", "priority", "run_at"),
        Index("ix_jobs_owner_status", "owner_id", "status", "run_at"),
        Index("ix_jobs_lease", "status", "heartbeat_at"),
        Index(
            "uq_jobs_owner_dedupe",
            "owner_id",
            "dedupe_key",
            unique=True,
            sqlite_where=_DEDUPE_WHERE,
            postgresql_where=_DEDUPE_WHERE,
        ),
    )


class JobEventTable(JobsBase):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    worker_id: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime.datetime] = mapped_column(nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON)

    # --- relationships ---
    job: Mapped[JobTable] = relationship("JobTable", back_populates="events")

    __table_args__ = (
        Index("ix_job_events_job", "job_id", "timestamp"),
    )


class WorkerHeartbeatTable(JobsBase):
    __tablename__ = "worker_heartbeats"

    worker_id: Mapped[str] = mapped_column(Text, primary_key=True)
    last_seen_at: Mapped[datetime.datetime] = mapped_column(nullable=False, index=True)
    started_at: Mapped[datetime.datetime | None] = mapped_column()
    hostname: Mapped[str | None] = mapped_column(Text)
    pid: Mapped[int | None] = mapped_column(Integer)
    lanes: Mapped[list | None] = mapped_column(JSON)
    meta: Mapped[dict | None] = mapped_column(JSON)


jobs_table = JobTable.__table__
job_events_table = JobEventTable.__table__
worker_heartbeats_table = WorkerHeartbeatTable.__table__

__all__ = [
    "JobTable",
    "JobEventTable",
    "WorkerHeartbeatTable",
    "jobs_table",
    "job_events_table",
    "worker_heartbeats_table",
]
