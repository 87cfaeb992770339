"""Audit logging service - access-relevant state changes.

Guidelines:
- NEVER log secrets (invitation tokens)
- Hash emails in details (use hash_email)
- Use IDs instead of raw data where possible
"""

import hashlib
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from exchange_access.db.enums import AuditEventType
from exchange_access.db.models import AuditLog


def hash_email(email: str) -> str:
    """Hash email for audit log (prefix + SHA256 suffix for debugging)."""
    if not email:
        return ""
    prefix = email.split("@")[0][:3] if "@" in email else email[:3]
    suffix = hashlib.sha256(email.lower().encode()).hexdigest()[:12]
    return f"{prefix}...@[hash:{suffix}]"


def _jsonable(details: dict[str, Any] | None) -> dict[str, Any] | None:
    if details is None:
        return None
    return {
        key: str(value) if isinstance(value, UUID) else value
        for key, value in details.items()
    }


def log_event(
    db: Session,
    event_type: AuditEventType,
    actor_user_id: UUID | None = None,
    target_type: str | None = None,
    target_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Log an audit event.

    Args:
        db: Database session
        event_type: Type of event (from AuditEventType)
        actor_user_id: User who performed the action (None for system sweeps)
        target_type: Type of entity affected (e.g., 'participant', 'user')
        target_id: ID of the affected entity
        details: Additional context (ids only, hashed emails)
    """
    entry = AuditLog(
        event_type=event_type.value,
        actor_user_id=actor_user_id,
        target_type=target_type,
        target_id=target_id,
        details=_jsonable(details),
    )
    db.add(entry)
    db.flush()
    return entry


def list_events_for_target(
    db: Session,
    target_type: str,
    target_id: UUID,
) -> list[AuditLog]:
    """Audit trail for one entity, oldest first."""
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.target_type == target_type, AuditLog.target_id == target_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        ).scalars().all()
    )
