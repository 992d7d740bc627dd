"""
Conflict resolution for queue entries.

Decides, for one queue entry and the remote authority's current copy of the
entity, whether to push the local change, accept the remote state, or flag a
conflict for the user. The rule is last-writer-wins with explicit conflict
flagging: the remote wins only when it changed after the local payload was
captured AND the change touches a field the local payload also carries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from tillsync.core.sync.models import Operation, QueueEntry, RemoteRecord, business_fields
from tillsync.utils.timestamps import ensure_aware

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """What the orchestrator should do with an entry."""

    PUSH_CREATE = "push_create"
    PUSH_UPDATE = "push_update"
    PUSH_DELETE = "push_delete"
    ACCEPT_REMOTE = "accept_remote"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ConflictDecision:
    """Resolver verdict plus the fields that triggered a conflict, if any."""

    outcome: Outcome
    reason: str = ""
    differing_fields: tuple[str, ...] = ()

    @property
    def is_push(self) -> bool:
        return self.outcome in (Outcome.PUSH_CREATE, Outcome.PUSH_UPDATE, Outcome.PUSH_DELETE)


def differing_fields(local: dict[str, Any] | None, remote: dict[str, Any]) -> list[str]:
    """
    Business fields in the local payload whose value differs on the remote.

    Keys the remote has but the local payload lacks are ignored; those are
    server-derived data the till never edited.
    """
    remote_fields = business_fields(remote)
    diffs = []
    for key, value in business_fields(local).items():
        if key not in remote_fields or remote_fields[key] != value:
            diffs.append(key)
    return sorted(diffs)


def _remote_is_newer(remote: RemoteRecord, captured: datetime | None) -> bool:
    if captured is None:
        return False
    return ensure_aware(remote.updated_at) > ensure_aware(captured)


class ConflictResolver:
    """
    Pure decision function over (entry, remote copy).

    Example:
        >>> resolver = ConflictResolver()
        >>> resolver.decide(entry, None).outcome
        <Outcome.PUSH_CREATE: 'push_create'>
    """

    def decide(self, entry: QueueEntry, remote: RemoteRecord | None) -> ConflictDecision:
        """
        Decide what to do with one entry.

        Args:
            entry: The queue entry about to be pushed
            remote: The remote authority's copy, or None if it has none

        Returns:
            ConflictDecision describing the outcome
        """
        if remote is None:
            if entry.operation == Operation.DELETE:
                return ConflictDecision(Outcome.ACCEPT_REMOTE, "already deleted on remote")
            return ConflictDecision(Outcome.PUSH_CREATE, "remote has no copy")

        newer = _remote_is_newer(remote, entry.captured_updated_at)

        if entry.operation == Operation.DELETE:
            if newer:
                return ConflictDecision(
                    Outcome.CONFLICT,
                    "remote was updated after the local delete was captured",
                )
            return ConflictDecision(Outcome.PUSH_DELETE)

        if newer:
            diffs = differing_fields(entry.payload, remote.fields)
            if diffs:
                logger.debug(
                    "Conflict on %s/%s: remote newer, fields differ: %s",
                    entry.entity_type,
                    entry.entity_id,
                    ", ".join(diffs),
                )
                return ConflictDecision(
                    Outcome.CONFLICT,
                    "remote changed after the local payload was captured",
                    tuple(diffs),
                )

        return ConflictDecision(Outcome.PUSH_UPDATE)
