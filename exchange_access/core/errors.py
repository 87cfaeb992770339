"""Error kinds raised by the access engine.

Store-level errors propagate unchanged to callers. Orphans found during
reconciliation are reported, never raised.
"""

from dataclasses import dataclass
from uuid import UUID


class ExchangeAccessError(Exception):
    """Base exception for access engine errors."""

    pass


class NotFoundError(ExchangeAccessError):
    """Identity, exchange, participant, assignment or invitation is absent."""

    pass


class ConflictError(ExchangeAccessError):
    """Duplicate active participant, assignment or pending invitation."""

    pass


class InvalidStateError(ExchangeAccessError):
    """Data-integrity violation or illegal state transition."""

    pass


class CapabilityDeniedError(ExchangeAccessError):
    """Exchange is visible but the requested capability is not granted."""

    pass


@dataclass(frozen=True)
class OrphanWarning:
    """A row reconciliation could not bind to a counterpart."""

    row_type: str  # "participant" or "user"
    row_id: UUID
    reason: str
