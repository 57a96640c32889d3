"""Retry policy: exponential backoff with jitter, and failure classification.

Two pure pieces the queue consults on ``Finalize(failure)``:

- :class:`BackoffPolicy` maps an attempt count to the next eligible time:
  ``min(base * 2**attempt, max_delay) + uniform(0, jitter)``, never sooner
  than an upstream ``retry_after``.
- :func:`is_retryable` separates transient failures (timeouts, rate limits,
  network errors, 5xx) from permanent ones (auth, validation, other 4xx).

Example:
    >>> from spine_jobs.retry import BackoffPolicy
    >>>
    >>> policy = BackoffPolicy(base_delay=2.0, max_delay=60.0, jitter=0.0)
    >>> [policy.next_delay(a) for a in range(1, 5)]
    [4.0, 8.0, 16.0, 32.0]
"""

from __future__ import annotations

import builtins
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pydantic

from .errors import (
    ErrorCategory,
    JobQueueError,
    categorize_error,
    get_retry_after,
)
from .models import utcnow

# HTTP statuses worth retrying: request timeout, too early, rate limited
RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})

# Exception types that never succeed on retry
PERMANENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
    LookupError,
    AttributeError,
    NotImplementedError,
    PermissionError,
    pydantic.ValidationError,
)

TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    builtins.TimeoutError,
    ConnectionError,
    OSError,
)


@dataclass
class BackoffPolicy:
    """Exponential backoff with bounded jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + uniform(0, jitter)

    Attributes:
        base_delay: Delay unit in seconds
        max_delay: Cap on the exponential part in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Upper bound of the random seconds added, to spread retries
        rng: Random source (injectable for tests)
    """

    base_delay: float = 2.0
    max_delay: float = 600.0
    multiplier: float = 2.0
    jitter: float = 1.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def next_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before the next attempt.

        Args:
            attempt: Attempts made so far (the job's ``attempts`` counter)
            retry_after: Minimum delay requested by the failure, if any
        """
        exponent = max(attempt, 0)
        try:
            delay = min(self.base_delay * (self.multiplier ** exponent), self.max_delay)
        except OverflowError:
            delay = self.max_delay
        if self.jitter > 0:
            delay += self.rng.uniform(0, self.jitter)
        if retry_after is not None:
            delay = max(delay, float(retry_after))
        return delay

    def next_retry(
        self,
        attempt: int,
        *,
        now: datetime | None = None,
        retry_after: float | None = None,
    ) -> datetime:
        """Absolute time at which the job becomes claimable again."""
        return (now or utcnow()) + timedelta(seconds=self.next_delay(attempt, retry_after))

    @classmethod
    def from_settings(cls, settings: Any) -> BackoffPolicy:
        return cls(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter_seconds,
        )


def _http_status(error: BaseException) -> int | None:
    """Pull an HTTP status off requests/httpx-style errors."""
    response = getattr(error, "response", None)
    for source in (error, response):
        if source is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(source, attr, None)
            if isinstance(value, int):
                return value
    return None


def is_retryable(error: BaseException | str | None) -> bool:
    """Classify a handler failure as transient (True) or permanent (False).

    Order of precedence:
        1. spine-jobs errors answer for themselves (``error.retryable``)
        2. an HTTP status on the error: 408/425/429/5xx retry, other 4xx don't
        3. timeouts / connection / OS errors retry
        4. validation-style errors (ValueError, TypeError, pydantic) don't
        5. anything else retries, bounded by ``max_attempts``
    """
    if error is None or isinstance(error, str):
        return True
    if isinstance(error, JobQueueError):
        return error.retryable

    status = _http_status(error)
    if status is not None:
        return status in RETRYABLE_HTTP_STATUSES or status >= 500

    if isinstance(error, PermissionError):
        return False
    if isinstance(error, TRANSIENT_EXCEPTION_TYPES):
        return True
    if isinstance(error, PERMANENT_EXCEPTION_TYPES):
        return False
    return True


def classify_error(error: BaseException | str | None) -> ErrorCategory:
    """Category for an arbitrary failure, HTTP-aware."""
    if error is None or isinstance(error, str):
        return ErrorCategory.HANDLER
    if isinstance(error, JobQueueError):
        return error.category
    status = _http_status(error)
    if status is not None:
        if status in (401, 403):
            return ErrorCategory.AUTH
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status >= 500 or status in RETRYABLE_HTTP_STATUSES:
            return ErrorCategory.NETWORK
        return ErrorCategory.VALIDATION
    if isinstance(error, pydantic.ValidationError):
        return ErrorCategory.VALIDATION
    return categorize_error(error)


def describe_error(
    error: BaseException | str | None,
    *,
    attempt: int | None = None,
    retryable: bool | None = None,
    retry_after: float | None = None,
) -> dict[str, Any]:
    """Normalize a failure into the ``last_error`` record stored on the job."""
    if isinstance(error, BaseException):
        name = type(error).__name__
        message = str(error) or name
        retry_after = retry_after if retry_after is not None else get_retry_after(error)
    else:
        name = "Error"
        message = error or "unknown error"
    record: dict[str, Any] = {
        "type": name,
        "message": message[:2000],
        "category": classify_error(error).value,
        "retryable": is_retryable(error) if retryable is None else retryable,
    }
    if attempt is not None:
        record["attempt"] = attempt
    if retry_after is not None:
        record["retry_after"] = retry_after
    return record


RetryClassifier = Callable[[BaseException | str | None], bool]

__all__ = [
    "BackoffPolicy",
    "RetryClassifier",
    "RETRYABLE_HTTP_STATUSES",
    "is_retryable",
    "classify_error",
    "describe_error",
]
