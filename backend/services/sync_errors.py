"""
Error taxonomy for reconciliation passes and approval transitions.

Item-level errors (validation, resolution, consistency) are caught inside a
pass and recorded; ``InvalidTransitionError`` and ``RecordNotFoundError``
propagate to approval callers.  ``ExternalAPIError`` lives with the
connectors in ``connectors.base``.
"""

from __future__ import annotations

import re
from typing import Any, Optional

# Signature of a previous association failure on ``last_sync_error``.
# The SQL store evaluates the same expression with PostgreSQL's ``~*``.
ASSOCIATION_ERROR_REGEX: str = "associat|404"
_ASSOCIATION_ERROR_PATTERN = re.compile(ASSOCIATION_ERROR_REGEX, re.IGNORECASE)

ASSOCIATION_FAILED_MESSAGE = "Association failed (will auto-retry on next push)"
NO_CONTACT_MESSAGE = "No contact available to associate"


def is_association_error(message: Optional[str]) -> bool:
    return bool(message) and _ASSOCIATION_ERROR_PATTERN.search(message or "") is not None


class SyncError(Exception):
    """Base class for reconciliation errors."""


class RecordValidationError(SyncError):
    """An incoming or stored item is malformed; fatal to that item only."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ResolutionFailure(SyncError):
    """An owner or association lookup failed; callers fall back."""


class ConsistencyViolation(SyncError):
    """A write would duplicate a unique external id or email."""

    def __init__(self, entity: str, field: str, value: Any) -> None:
        super().__init__(f"Duplicate {entity}.{field}: {value!r}")
        self.entity = entity
        self.field = field
        self.value = value


class RecordNotFoundError(SyncError):
    """The record addressed by an approval action does not exist."""

    def __init__(self, entity: str, record_id: Any) -> None:
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class InvalidTransitionError(SyncError):
    """The requested approval transition is not allowed from the current state."""

    def __init__(self, entity: str, record_id: Any, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot {requested} {entity} {record_id}: status is {current}"
        )
        self.entity = entity
        self.record_id = record_id
        self.current = current
        self.requested = requested
