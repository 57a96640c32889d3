"""
Structured error types for the job queue.

Every error raised by spine-jobs carries the metadata the queue needs to
decide what happens next: whether the failed work may be retried, how long
to wait before retrying, which category it belongs to for alerting, and the
HTTP-equivalent status an embedding service should return.

Manifesto:
    - **Explicit retry semantics:** Each error knows if it is retryable
    - **Caller-facing status:** Bad input maps to a 4xx-equivalent code
    - **Rich context:** Errors carry job_id / kind / worker_id for logging
    - **Error chaining:** Original exceptions are preserved as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       JobQueueError                           │
        │   (category, retryable, retry_after, context, status_code)    │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  ValidationError   NotFoundError   ConflictError              │
        │  (400)             (404)           (409)                      │
        │                                        │                      │
        │                                InvalidTransitionError         │
        │                                                               │
        │  LeaseLostError    StoreError      HandlerError               │
        │  (lease gone)      (retryable)         │                      │
        │                               ┌────────┴─────────┐            │
        │                      TransientHandlerError  PermanentHandlerError
        │                      RateLimitedError       HandlerNotFoundError
        │                      HandlerTimeoutError                      │
        └──────────────────────────────────────────────────────────────┘

Propagation:
    - Store I/O failures surface to callers of Enqueue/Claim/Finalize as
      :class:`StoreError`.
    - Dedupe collisions on Enqueue are *not* errors; they come back as
      ``EnqueueResult(deduped=True)``.
    - A worker that lost its lease gets ``False`` back from Heartbeat and
      Finalize. :class:`LeaseLostError` is only raised inside handlers via
      ``JobContext.raise_if_cancelled()``.

Usage:
    from spine_jobs.errors import TransientHandlerError, PermanentHandlerError

    def sync_mailbox(payload, ctx):
        try:
            fetch(payload.mailbox)
        except httpx.TimeoutException as exc:
            raise TransientHandlerError("mailbox fetch timed out", cause=exc)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 401:
                raise PermanentHandlerError("mailbox credentials revoked", cause=exc)
            raise

Tags:
    error-handling, exception-hierarchy, retry-logic, spine-jobs

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"     # Bad caller input, payload schema failures
    NOT_FOUND = "NOT_FOUND"       # Unknown job / not owned by caller
    CONFLICT = "CONFLICT"         # Dedupe collision, forbidden transition
    LEASE = "LEASE"               # Worker no longer holds the claim
    STORAGE = "STORAGE"           # Database / I/O failures
    NETWORK = "NETWORK"           # Timeouts, connection resets, 5xx
    RATE_LIMIT = "RATE_LIMIT"     # 429 and friends
    AUTH = "AUTH"                 # Credentials rejected upstream
    HANDLER = "HANDLER"           # Failures raised by job handlers
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        job_id: Job the error relates to
        owner_id: Owner (tenant/user) of the job
        kind: Handler kind of the job
        worker_id: Worker that observed the error
        attempt: Attempt number during which the error happened
        metadata: Additional key-value pairs
    """

    job_id: str | None = None
    owner_id: str | None = None
    kind: str | None = None
    worker_id: str | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "owner_id", "kind", "worker_id", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class JobQueueError(Exception):
    """
    Base exception for all spine-jobs errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``status_code`` class attributes so raising sites only pass a message.

    Examples:
        >>> error = JobQueueError("Something went wrong")
        >>> error.retryable
        False
        >>> error.with_context(job_id="j-1").context.job_id
        'j-1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    # HTTP-equivalent status for embedding services
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> JobQueueError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFoundError("no such job").with_context(job_id=job_id)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CALLER ERRORS (4xx-equivalent)
# =============================================================================


class ValidationError(JobQueueError):
    """Rejected input: missing owner/kind, bad option values, payload schema failures.

    Raised before any store write happens.
    """

    default_category = ErrorCategory.VALIDATION
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.errors:
            result["errors"] = self.errors
        return result


class NotFoundError(JobQueueError):
    """Unknown job id, or the job exists but is not owned by the caller."""

    default_category = ErrorCategory.NOT_FOUND
    status_code = 404


class ConflictError(JobQueueError):
    """A uniqueness constraint prevented the write.

    Enqueue never raises this (collisions come back as ``deduped=True``).
    Retry raises it when re-queuing would collide with another in-flight job
    holding the same ``(owner_id, dedupe_key)``.
    """

    default_category = ErrorCategory.CONFLICT
    status_code = 409


class InvalidTransitionError(ConflictError):
    """The state machine does not allow *current → target*."""

    def __init__(self, current: str, target: str, **kwargs: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid job transition: {current} → {target}", **kwargs)


# =============================================================================
# WORKER / STORE ERRORS
# =============================================================================


class LeaseLostError(JobQueueError):
    """The worker no longer holds the job's claim.

    Happens when the lease expired and another worker reclaimed the job, or
    when the job was canceled while the handler was running.
    """

    default_category = ErrorCategory.LEASE
    status_code = 409


class StoreError(JobQueueError):
    """Database failure underneath a queue operation."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True
    status_code = 503


# =============================================================================
# HANDLER ERRORS
# =============================================================================


class HandlerError(JobQueueError):
    """Failure raised from inside a job handler."""

    default_category = ErrorCategory.HANDLER


class TransientHandlerError(HandlerError):
    """Temporary failure; the job is re-queued with backoff."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class HandlerTimeoutError(TransientHandlerError):
    """Handler gave up waiting on something upstream."""


class RateLimitedError(TransientHandlerError):
    """Upstream rate limit hit. The retry is never scheduled before ``retry_after``."""

    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float = 60,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class PermanentHandlerError(HandlerError):
    """Failure that will not go away on retry; the job is dead-lettered immediately."""

    default_retryable = False


class HandlerNotFoundError(PermanentHandlerError):
    """No handler is registered for the job's kind."""

    default_category = ErrorCategory.INTERNAL

    def __init__(self, kind: str, available: list[str] | None = None):
        self.kind = kind
        self.available = available or []
        super().__init__(
            f"No handler registered for kind {kind!r}. "
            f"Available kinds: {self.available or 'none'}"
        )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable.

    Queue errors answer for themselves. For everything else see
    :func:`spine_jobs.retry.is_retryable`, which adds HTTP status and
    exception-type heuristics on top.
    """
    if isinstance(error, JobQueueError):
        return error.retryable
    return isinstance(error, (builtins.TimeoutError, ConnectionError))


def get_retry_after(error: BaseException) -> float | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, JobQueueError):
        return error.retry_after
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, JobQueueError):
        return error.category
    if isinstance(error, (builtins.TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(error, PermissionError):
        return ErrorCategory.AUTH
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "JobQueueError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "LeaseLostError",
    "StoreError",
    "HandlerError",
    "TransientHandlerError",
    "HandlerTimeoutError",
    "RateLimitedError",
    "PermanentHandlerError",
    "HandlerNotFoundError",
    "is_retryable",
    "get_retry_after",
    "categorize_error",
]
