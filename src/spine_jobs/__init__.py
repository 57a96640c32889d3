"""
spine-jobs - durable job queue and worker coordination.

Jobs are rows in a relational store; workers claim them with a
compare-and-swap, keep the claim alive with heartbeats and report the
outcome through Finalize.  Failed work is retried with exponential
backoff and dead-lettered when attempts run out.

Quick start::

    from spine_jobs import JobQueue, WorkerLoop, register_handler

    @register_handler("email_sync")
    def email_sync(payload, ctx):
        return {"mailbox": payload["mailbox"]}

    queue = JobQueue.from_settings()
    queue.enqueue("user-1", "email_sync", {"mailbox": "inbox"}, dedupe_key="inbox")
    WorkerLoop(queue).start()
"""

__version__ = "0.1.0"

from spine_jobs.context import JobContext
from spine_jobs.errors import (
    ConflictError,
    ErrorCategory,
    HandlerNotFoundError,
    InvalidTransitionError,
    JobQueueError,
    LeaseLostError,
    NotFoundError,
    PermanentHandlerError,
    RateLimitedError,
    StoreError,
    TransientHandlerError,
    ValidationError,
)
from spine_jobs.heartbeat import HeartbeatMonitor, LeaseKeeper, SweepResult
from spine_jobs.metrics import JobMetrics
from spine_jobs.models import (
    EnqueueOptions,
    EnqueueResult,
    Failure,
    HealthCounts,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    Success,
    WorkerHeartbeat,
)
from spine_jobs.queue import JobQueue
from spine_jobs.registry import HandlerRegistry, get_default_registry, register_handler
from spine_jobs.retry import BackoffPolicy, is_retryable
from spine_jobs.settings import JobQueueSettings, get_settings
from spine_jobs.worker import WorkerLoop

__all__ = [
    "__version__",
    # queue
    "JobQueue",
    "WorkerLoop",
    "JobContext",
    "HeartbeatMonitor",
    "LeaseKeeper",
    "SweepResult",
    "JobMetrics",
    # models
    "Job",
    "JobStatus",
    "JobEvent",
    "JobEventType",
    "EnqueueOptions",
    "EnqueueResult",
    "HealthCounts",
    "WorkerHeartbeat",
    "Success",
    "Failure",
    # handlers
    "HandlerRegistry",
    "get_default_registry",
    "register_handler",
    # retry
    "BackoffPolicy",
    "is_retryable",
    # settings
    "JobQueueSettings",
    "get_settings",
    # errors
    "JobQueueError",
    "ErrorCategory",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "LeaseLostError",
    "StoreError",
    "TransientHandlerError",
    "RateLimitedError",
    "PermanentHandlerError",
    "HandlerNotFoundError",
]
