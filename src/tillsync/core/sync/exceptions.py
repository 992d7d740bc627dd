"""
Custom exceptions for the sync engine.

Exception Hierarchy:
    SyncError (base)
    ├── TransientNetworkError (retry with backoff)
    ├── PermanentValidationError (terminal error, never auto-retried)
    ├── ConflictDetected (remote refused the push as stale)
    ├── ConflictPendingError (mutation rejected while a conflict is open)
    ├── EntryNotFoundError (unknown queue entry)
    └── InvalidTransitionError (operation not allowed in the entry's state)

Example:
    >>> from tillsync.core.sync.exceptions import PermanentValidationError
    >>> try:
    ...     raise PermanentValidationError("name is required", status_code=422)
    ... except PermanentValidationError as e:
    ...     print(e.status_code, e.context)
    422 {'status_code': 422}
"""

from __future__ import annotations


class SyncError(Exception):
    """
    Base exception for all sync engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context as keyword arguments
    """

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class TransientNetworkError(SyncError):
    """
    The remote authority could not be reached or answered with a retryable
    failure (timeout, connection error, 5xx, 429).
    """


class PermanentValidationError(SyncError):
    """
    The remote authority rejected the request (4xx other than 429).

    Retrying the same payload would fail again, so the entry stays in
    ``error`` until the user retries or discards it.

    Attributes:
        status_code: HTTP status returned by the remote, if any
    """

    def __init__(self, message: str, status_code: int | None = None, **context: object) -> None:
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class ConflictDetected(SyncError):
    """
    The remote authority refused a push because its copy changed since the
    local payload was captured (HTTP 409).

    The entry is flagged ``conflict`` and waits for an explicit resolution.
    """

    def __init__(self, entity_type: str, entity_id: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Conflict on {entity_type}/{entity_id}",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictPendingError(SyncError):
    """
    A local mutation arrived for an entity whose queue entry is in conflict.

    The conflict must be resolved before the entity accepts new mutations.
    """

    def __init__(self, entity_type: str, entity_id: str, entry_id: str) -> None:
        super().__init__(
            f"{entity_type}/{entity_id} has an unresolved conflict (entry {entry_id})",
            entity_type=entity_type,
            entity_id=entity_id,
            entry_id=entry_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.entry_id = entry_id


class EntryNotFoundError(SyncError):
    """No live queue entry with the given id."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Queue entry not found: {entry_id}", entry_id=entry_id)
        self.entry_id = entry_id


class InvalidTransitionError(SyncError):
    """The requested operation is not valid for the entry's current status."""
