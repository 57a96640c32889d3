"""Context object handed to job handlers.

Handlers are called as ``handler(payload, ctx)``.  The context exposes the
job being processed and the cooperative-cancellation flag the worker's
:class:`~spine_jobs.heartbeat.LeaseKeeper` sets when the lease is refused
(the job was canceled, or reclaimed after a missed heartbeat).  Handlers
doing long work should check it between steps; nothing interrupts them
forcibly.

.. code-block:: text

    JobContext
    ├── .job_id / .kind / .attempt / .owner_id
    ├── .payload                → parsed payload (pydantic model or dict)
    ├── .is_cancelled()         → lease refused?
    ├── .raise_if_cancelled()   → LeaseLostError if so
    ├── .heartbeat()            → refresh the lease now
    └── .log                    → structlog logger bound to the job

Example:
    >>> def sync_mailbox(payload, ctx):
    ...     for page in fetch_pages(payload.mailbox):
    ...         ctx.raise_if_cancelled()
    ...         store(page)
    ...         ctx.log.info("page_synced", page=page.number)
    ...     return {"pages": page.number}
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import ErrorContext, JobQueueError, LeaseLostError
from .logging import get_logger
from .models import Job

logger = get_logger(__name__)

if TYPE_CHECKING:
    from .claim import LeaseManager


@dataclass
class JobContext:
    """Per-attempt view of a claimed job."""

    job: Job
    worker_id: str
    payload: Any = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    leases: LeaseManager | None = field(default=None, repr=False)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def kind(self) -> str:
        return self.job.kind

    @property
    def owner_id(self) -> str:
        return self.job.owner_id

    @property
    def attempt(self) -> int:
        return self.job.attempts

    @property
    def log(self) -> Any:
        return get_logger("spine_jobs.handler").bind(
            job_id=self.job.id,
            kind=self.job.kind,
            worker_id=self.worker_id,
            attempt=self.job.attempts,
        )

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`LeaseLostError` if the worker no longer holds the job."""
        if self.cancelled.is_set():
            raise LeaseLostError(
                f"Job {self.job.id} was canceled or reclaimed",
                context=ErrorContext(
                    job_id=self.job.id,
                    kind=self.job.kind,
                    worker_id=self.worker_id,
                    attempt=self.job.attempts,
                ),
            )

    def heartbeat(self) -> bool:
        """Refresh the lease immediately; a refusal sets the cancel flag.

        A store failure is logged and leaves the flag alone: the lease is
        not known to be lost, and the handler keeps running.
        """
        if self.leases is None or self.cancelled.is_set():
            return not self.cancelled.is_set()
        try:
            held = self.leases.heartbeat(self.job.id, self.worker_id)
        except JobQueueError as e:
            logger.warning(
                "heartbeat_failed", job_id=self.job.id, worker_id=self.worker_id, error=str(e)
            )
            return True
        if not held:
            self.cancelled.set()
            return False
        return True


__all__ = ["JobContext"]
