"""
Retry policy for failed remote calls.

Classifies failures as transient or permanent and computes capped
exponential backoff deadlines. There is no jitter: successive delays never
decrease, which keeps retry schedules predictable for a single till.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

import httpx

from tillsync.core.config.models import RetryConfig
from tillsync.core.sync.exceptions import PermanentValidationError, TransientNetworkError
from tillsync.core.sync.models import FailureKind, QueueEntry, SyncStatus
from tillsync.utils.timestamps import ensure_aware, utcnow

logger = logging.getLogger(__name__)

# HTTP status codes that are worth retrying besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    """Server errors and rate limiting are retryable; other 4xx are not."""
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class RetryPolicy:
    """
    Failure classification and backoff computation.

    Example:
        >>> policy = RetryPolicy()
        >>> [policy.next_attempt_delay(n).total_seconds() for n in range(1, 5)]
        [2.0, 4.0, 8.0, 16.0]
    """

    def __init__(
        self,
        base_delay: float = 2.0,
        multiplier: float = 2.0,
        max_delay: float = 300.0,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            base_delay=config.base_delay_seconds,
            multiplier=config.multiplier,
            max_delay=config.max_delay_seconds,
        )

    def classify(self, error: BaseException) -> FailureKind:
        """
        Decide whether a failure is worth retrying.

        Transient: network errors, timeouts, 5xx, 408 and 429.
        Permanent: validation errors, other 4xx, and anything unrecognized
        (so an unknown failure surfaces instead of looping forever).
        """
        if isinstance(error, TransientNetworkError):
            return FailureKind.TRANSIENT
        if isinstance(error, PermanentValidationError):
            return FailureKind.PERMANENT
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return FailureKind.TRANSIENT
        if isinstance(error, httpx.HTTPStatusError):
            if is_retryable_status(error.response.status_code):
                return FailureKind.TRANSIENT
            return FailureKind.PERMANENT
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return FailureKind.TRANSIENT
        if isinstance(error, ConnectionError):
            return FailureKind.TRANSIENT

        logger.debug("Unrecognized failure %s classified as permanent", type(error).__name__)
        return FailureKind.PERMANENT

    def should_retry(self, entry: QueueEntry) -> bool:
        """True if the entry's last failure may be retried automatically."""
        if entry.status != SyncStatus.ERROR:
            return entry.status == SyncStatus.PENDING
        return entry.failure_kind == FailureKind.TRANSIENT

    def next_attempt_delay(self, attempt_count: int) -> timedelta:
        """
        Delay before the next attempt after ``attempt_count`` failures.

        ``base * multiplier ** (attempt_count - 1)``, capped at ``max_delay``.
        """
        exponent = max(attempt_count, 1) - 1
        try:
            delay = self.base_delay * (self.multiplier**exponent)
        except OverflowError:
            delay = self.max_delay
        return timedelta(seconds=min(delay, self.max_delay))

    def next_attempt_at(self, attempt_count: int, now: datetime | None = None) -> datetime:
        """Absolute backoff deadline after ``attempt_count`` failures."""
        return (now or utcnow()) + self.next_attempt_delay(attempt_count)

    def is_due(self, entry: QueueEntry, now: datetime | None = None) -> bool:
        """True if the entry is eligible for an attempt at ``now``."""
        if entry.status == SyncStatus.PENDING:
            return True
        if not self.should_retry(entry):
            return False
        if entry.next_attempt_at is None:
            return True
        return ensure_aware(now or utcnow()) >= ensure_aware(entry.next_attempt_at)
