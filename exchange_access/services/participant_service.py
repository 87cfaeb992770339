"""Participant store: exchange participant rows and their invariants.

Invariants:
- user_id and contact_id are never both null (checked here and by a CHECK
  constraint)
- at most one active row per (exchange, user) and per (exchange, contact),
  enforced by partial unique indexes; duplicates surface as ConflictError
- rows are deactivated, never deleted

Lookups by identity match user_id OR contact_id. Checking only one key is how
invited users end up unable to see their exchange.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exchange_access.core.errors import ConflictError, InvalidStateError, NotFoundError
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.enums import AuditEventType, Role
from exchange_access.db.models import Exchange, ExchangeParticipant
from exchange_access.schemas.participant import ParticipantRead
from exchange_access.services import audit_service, identity_service
from exchange_access.services.capability_service import is_normalized, normalize_permissions
from exchange_access.services.identity_service import Identity

logger = logging.getLogger(__name__)


def _check_identity_keys(participant: ExchangeParticipant) -> None:
    if participant.user_id is None and participant.contact_id is None:
        logger.error(
            "Participant row has neither user_id nor contact_id",
            extra=build_log_context(
                participant_id=participant.id, exchange_id=participant.exchange_id
            ),
        )
        raise InvalidStateError(f"Participant {participant.id} has no identity key")


def to_read_model(participant: ExchangeParticipant) -> ParticipantRead:
    """Participant with its stored permissions normalized for the row's role."""
    _check_identity_keys(participant)
    return ParticipantRead(
        id=participant.id,
        exchange_id=participant.exchange_id,
        user_id=participant.user_id,
        contact_id=participant.contact_id,
        role=participant.role,
        permissions=normalize_permissions(participant.permissions, participant.role),
        is_active=participant.is_active,
        created_at=participant.created_at,
    )


# =============================================================================
# Writes
# =============================================================================

def add_participant(
    db: Session,
    exchange_id: UUID,
    identity: Identity,
    role: Role | str,
    permissions: Any = None,
    assigned_by_user_id: UUID | None = None,
) -> ExchangeParticipant:
    """
    Add an identity to an exchange.

    A missing key is filled from the stored user/contact link before the
    insert. Duplicates are detected by the storage uniqueness constraint, not
    by a pre-check, so concurrent invitation acceptances cannot both insert.

    Raises:
        NotFoundError: exchange does not exist
        InvalidStateError: identity keys missing or pointing at different people
        ConflictError: an active row already exists for this user or contact
    """
    role_value = role.value if isinstance(role, Role) else Role(role).value

    if identity.user_id is None and identity.contact_id is None:
        raise InvalidStateError("Participant needs a user_id or a contact_id")
    if not db.get(Exchange, exchange_id):
        raise NotFoundError(f"Exchange {exchange_id} not found")
    identity_service.assert_consistent(db, identity)
    identity = identity_service.complete_identity(db, identity)

    participant = ExchangeParticipant(
        exchange_id=exchange_id,
        user_id=identity.user_id,
        contact_id=identity.contact_id,
        role=role_value,
        permissions=normalize_permissions(permissions, role_value),
        is_active=True,
        assigned_by_user_id=assigned_by_user_id,
    )
    try:
        with db.begin_nested():
            db.add(participant)
            db.flush()
    except IntegrityError:
        logger.info(
            "Duplicate active participant rejected",
            extra=build_log_context(
                user_id=identity.user_id,
                contact_id=identity.contact_id,
                exchange_id=exchange_id,
            ),
        )
        raise ConflictError(
            f"Identity is already an active participant on exchange {exchange_id}"
        )

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.PARTICIPANT_ADDED,
        actor_user_id=assigned_by_user_id,
        target_type="participant",
        target_id=participant.id,
        details={
            "exchange_id": exchange_id,
            "user_id": identity.user_id,
            "contact_id": identity.contact_id,
            "role": role_value,
        },
    )
    return participant


def get_participant(db: Session, participant_id: UUID) -> ExchangeParticipant:
    """Get a participant row by id (active or not)."""
    participant = db.get(ExchangeParticipant, participant_id)
    if not participant:
        raise NotFoundError(f"Participant {participant_id} not found")
    return participant


def deactivate_participant(
    db: Session,
    participant_id: UUID,
    actor_user_id: UUID | None = None,
) -> ExchangeParticipant:
    """Soft-delete a participant. Deactivating an inactive row is a no-op."""
    participant = get_participant(db, participant_id)
    if not participant.is_active:
        return participant

    participant.is_active = False
    participant.updated_at = datetime.now(timezone.utc)
    db.flush()

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.PARTICIPANT_DEACTIVATED,
        actor_user_id=actor_user_id,
        target_type="participant",
        target_id=participant.id,
        details={"exchange_id": participant.exchange_id},
    )
    return participant


def update_participant_permissions(
    db: Session,
    participant_id: UUID,
    permissions: Any,
    actor_user_id: UUID | None = None,
) -> ExchangeParticipant:
    """Replace a participant's permissions with their normalized form."""
    participant = get_participant(db, participant_id)
    if not participant.is_active:
        raise InvalidStateError(f"Participant {participant_id} is inactive")

    before = normalize_permissions(participant.permissions, participant.role)
    after = normalize_permissions(permissions, participant.role)
    participant.permissions = after
    participant.updated_at = datetime.now(timezone.utc)
    db.flush()

    changed = sorted(key for key in after if after[key] != before[key])
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.PARTICIPANT_PERMISSIONS_UPDATED,
        actor_user_id=actor_user_id,
        target_type="participant",
        target_id=participant.id,
        details={"changed": changed},
    )
    return participant


# =============================================================================
# Reads
# =============================================================================

def list_participants_for_exchange(db: Session, exchange_id: UUID) -> list[ParticipantRead]:
    """Active participants on an exchange with normalized permissions."""
    rows = db.execute(
        select(ExchangeParticipant)
        .where(
            ExchangeParticipant.exchange_id == exchange_id,
            ExchangeParticipant.is_active.is_(True),
        )
        .order_by(ExchangeParticipant.created_at, ExchangeParticipant.id)
    ).scalars().all()
    return [to_read_model(row) for row in rows]


def identity_filter(identity: Identity):
    """SQL filter matching rows for either identity key."""
    clauses = []
    if identity.user_id is not None:
        clauses.append(ExchangeParticipant.user_id == identity.user_id)
    if identity.contact_id is not None:
        clauses.append(ExchangeParticipant.contact_id == identity.contact_id)
    if not clauses:
        raise InvalidStateError("Identity needs a user_id or a contact_id")
    return or_(*clauses)


def list_participants_for_identity(
    db: Session,
    identity: Identity,
    exchange_id: UUID | None = None,
) -> list[ExchangeParticipant]:
    """
    Active rows where user_id = identity.user_id OR contact_id = identity.contact_id.

    Optionally scoped to one exchange.
    """
    query = select(ExchangeParticipant).where(
        identity_filter(identity),
        ExchangeParticipant.is_active.is_(True),
    )
    if exchange_id is not None:
        query = query.where(ExchangeParticipant.exchange_id == exchange_id)
    return list(db.execute(query).scalars().all())


# =============================================================================
# Batch migration
# =============================================================================

def migrate_stored_permissions(db: Session, commit: bool = False) -> dict:
    """
    Rewrite every stored permissions value into the canonical object form.

    Idempotent: rows already normalized are skipped. Each row is isolated in
    its own savepoint so one bad row does not stop the batch.

    Returns stats: {checked, updated, skipped, errors}
    """
    rows = db.execute(select(ExchangeParticipant)).scalars().all()
    stats = {"checked": len(rows), "updated": 0, "skipped": 0, "errors": 0}

    for row in rows:
        if is_normalized(row.permissions):
            stats["skipped"] += 1
            continue
        try:
            with db.begin_nested():
                row.permissions = normalize_permissions(row.permissions, row.role)
                row.updated_at = datetime.now(timezone.utc)
                db.flush()
        except Exception as exc:
            logger.warning("Permission migration failed participant=%s error=%s", row.id, exc)
            stats["errors"] += 1
            continue
        if commit:
            db.commit()
        stats["updated"] += 1

    return stats
