"""
Tests for failure classification and backoff.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from tillsync.core.config.models import RetryConfig
from tillsync.core.sync.exceptions import PermanentValidationError, TransientNetworkError
from tillsync.core.sync.models import FailureKind, Operation, QueueEntry, SyncStatus
from tillsync.core.sync.retry import RetryPolicy, is_retryable_status
from tillsync.utils.timestamps import utcnow


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("PUT", "https://api.example.com/products/p-1")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


def _entry(**overrides) -> QueueEntry:
    values = {
        "id": "e-1",
        "seq": 1,
        "entity_type": "products",
        "entity_id": "p-1",
        "operation": Operation.UPDATE,
        "created_at": utcnow(),
    }
    values.update(overrides)
    return QueueEntry(**values)


class TestRetryableStatus:
    """Tests for is_retryable_status."""

    @pytest.mark.parametrize("code", [500, 502, 503, 504, 408, 429])
    def test_retryable(self, code):
        assert is_retryable_status(code)

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 409, 422])
    def test_not_retryable(self, code):
        assert not is_retryable_status(code)


class TestClassify:
    """Tests for RetryPolicy.classify."""

    @pytest.fixture
    def policy(self):
        return RetryPolicy()

    @pytest.mark.parametrize(
        "error",
        [
            TransientNetworkError("connection reset"),
            asyncio.TimeoutError(),
            TimeoutError("slow"),
            ConnectionRefusedError("refused"),
            httpx.ConnectError("no route"),
            httpx.ReadTimeout("read timed out"),
        ],
    )
    def test_transient(self, policy, error):
        assert policy.classify(error) == FailureKind.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [
            PermanentValidationError("bad payload", status_code=422),
            ValueError("surprise"),
            KeyError("missing"),
        ],
    )
    def test_permanent(self, policy, error):
        assert policy.classify(error) == FailureKind.PERMANENT

    def test_http_status_errors(self, policy):
        assert policy.classify(_status_error(503)) == FailureKind.TRANSIENT
        assert policy.classify(_status_error(429)) == FailureKind.TRANSIENT
        assert policy.classify(_status_error(400)) == FailureKind.PERMANENT


class TestBackoff:
    """Tests for delay computation."""

    def test_exponential_sequence(self):
        policy = RetryPolicy(base_delay=2, multiplier=2, max_delay=300)
        delays = [policy.next_attempt_delay(n).total_seconds() for n in range(1, 6)]
        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_capped_and_non_decreasing(self):
        policy = RetryPolicy(base_delay=2, multiplier=3, max_delay=60)
        delays = [policy.next_attempt_delay(n) for n in range(1, 40)]

        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == timedelta(seconds=60)

    def test_huge_attempt_count_does_not_overflow(self):
        policy = RetryPolicy(base_delay=1, multiplier=10, max_delay=120)
        assert policy.next_attempt_delay(10_000) == timedelta(seconds=120)

    def test_next_attempt_at(self):
        policy = RetryPolicy(base_delay=5, multiplier=2, max_delay=300)
        now = utcnow()
        assert policy.next_attempt_at(2, now) == now + timedelta(seconds=10)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=0)
        with pytest.raises(ValueError):
            RetryPolicy(multiplier=0.5)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=10, max_delay=5)

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            RetryConfig(base_delay_seconds=1, multiplier=3, max_delay_seconds=30)
        )
        assert policy.next_attempt_delay(3) == timedelta(seconds=9)


class TestEligibility:
    """Tests for should_retry and is_due."""

    @pytest.fixture
    def policy(self):
        return RetryPolicy()

    def test_pending_is_due(self, policy):
        assert policy.is_due(_entry())

    def test_permanent_never_due(self, policy):
        entry = _entry(status=SyncStatus.ERROR, failure_kind=FailureKind.PERMANENT, attempts=1)
        assert not policy.should_retry(entry)
        assert not policy.is_due(entry, utcnow() + timedelta(days=365))

    def test_transient_waits_for_deadline(self, policy):
        now = utcnow()
        entry = _entry(
            status=SyncStatus.ERROR,
            failure_kind=FailureKind.TRANSIENT,
            attempts=1,
            next_attempt_at=now + timedelta(seconds=30),
        )
        assert not policy.is_due(entry, now)
        assert policy.is_due(entry, now + timedelta(seconds=30))

    def test_transient_without_deadline_is_due(self, policy):
        entry = _entry(status=SyncStatus.ERROR, failure_kind=FailureKind.TRANSIENT, attempts=1)
        assert policy.is_due(entry)

    def test_conflict_not_retried(self, policy):
        assert not policy.should_retry(_entry(status=SyncStatus.CONFLICT))
