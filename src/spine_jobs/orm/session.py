"""SQLAlchemy engine factory and schema bootstrap for the job store.

SQLite notes
------------
Every transaction is opened with ``BEGIN IMMEDIATE`` so a claim's
select-then-update runs under the database write lock; concurrent writers
wait on ``busy_timeout`` instead of failing with ``SQLITE_BUSY`` halfway
through.  In-memory databases share a single connection (``StaticPool``)
and are only suitable for single-threaded use.

PostgreSQL needs nothing special: claims use ``FOR UPDATE SKIP LOCKED``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from spine_jobs.orm.base import JobsBase

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_jobs_engine(
    url: str = "sqlite:///spine_jobs.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults for the job store.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``, etc.)
    echo:
        If ``True``, log all SQL.
    pool_size, max_overflow:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
        if _is_memory_url(url):
            kwargs.setdefault("poolclass", StaticPool)

        engine = _sa_create_engine(url, echo=echo, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            # take transaction control away from pysqlite; see _begin_immediate
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow

    return _sa_create_engine(url, echo=echo, pool_pre_ping=True, **pool_kwargs, **kwargs)


def create_schema(engine: Engine) -> None:
    """Create all job store tables and indices (idempotent)."""
    JobsBase.metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    """Drop all job store tables. Test helper."""
    JobsBase.metadata.drop_all(engine)
