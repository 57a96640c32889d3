"""SQLAlchemy 2.0 schema for the job store.

Modules
-------
base        JobsBase (declarative base) + UTCDateTime
session     Engine factory (SQLite / PostgreSQL) and schema bootstrap
tables      JobTable, JobEventTable, WorkerHeartbeatTable

Tags:
    spine-jobs, orm, sqlalchemy, schema
"""

from __future__ import annotations

from spine_jobs.orm.base import JobsBase, UTCDateTime
from spine_jobs.orm.session import create_jobs_engine, create_schema, drop_schema
from spine_jobs.orm.tables import (
    JobEventTable,
    JobTable,
    WorkerHeartbeatTable,
    job_events_table,
    jobs_table,
    worker_heartbeats_table,
)

__all__ = [
    "JobsBase",
    "UTCDateTime",
    "create_jobs_engine",
    "create_schema",
    "drop_schema",
    "JobTable",
    "JobEventTable",
    "WorkerHeartbeatTable",
    "jobs_table",
    "job_events_table",
    "worker_heartbeats_table",
]
