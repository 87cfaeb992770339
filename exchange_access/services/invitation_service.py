"""Invitation lifecycle: create, accept, cancel, expire.

An invitation to an unknown email writes a contact-only participant row up
front; acceptance (or the periodic reconciliation sweep) binds it to the user
once they register. Inviting an email that already belongs to a user adds
the user directly and records the invitation as accepted.

Status transitions are compare-and-set on `status = 'pending'`; accepted,
expired and cancelled never change again.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from exchange_access.core.config import settings
from exchange_access.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.base import as_utc
from exchange_access.db.enums import AuditEventType, InvitationStatus, Role
from exchange_access.db.models import Contact, Exchange, ExchangeParticipant, Invitation, User
from exchange_access.schemas.invitation import InvitationCreate
from exchange_access.services import audit_service, participant_service, reconciliation_service
from exchange_access.services.identity_service import (
    Identity,
    find_contacts_by_email,
    find_user_by_email,
)

logger = logging.getLogger(__name__)


def generate_token() -> str:
    """Unguessable invitation token (256 bits, hex)."""
    return secrets.token_hex(32)


def effective_status(invitation: Invitation, now: datetime | None = None) -> InvitationStatus:
    """Stored status, except a pending invitation past expiry reads as expired."""
    status = InvitationStatus(invitation.status)
    if status.is_terminal:
        return status
    now = now or datetime.now(timezone.utc)
    expires_at = as_utc(invitation.expires_at)
    if expires_at is not None and expires_at <= now:
        return InvitationStatus.EXPIRED
    return status


def get_invitation(db: Session, token: str) -> Invitation:
    invitation = db.execute(
        select(Invitation).where(Invitation.token == token)
    ).scalar_one_or_none()
    if not invitation:
        raise NotFoundError("Invitation not found")
    return invitation


def list_invitations(db: Session, exchange_id: UUID) -> list[Invitation]:
    """All invitations for an exchange, newest first."""
    return list(
        db.execute(
            select(Invitation)
            .where(Invitation.exchange_id == exchange_id)
            .order_by(Invitation.created_at.desc())
        ).scalars().all()
    )


def _transition(db: Session, invitation: Invitation, status: InvitationStatus, **values) -> bool:
    """Move a pending invitation to a terminal status. False if it was no longer pending."""
    result = db.execute(
        update(Invitation)
        .where(
            Invitation.id == invitation.id,
            Invitation.status == InvitationStatus.PENDING.value,
        )
        .values(status=status.value, **values)
    )
    return result.rowcount == 1


def _release_contact_grant(db: Session, invitation: Invitation) -> None:
    """Deactivate the contact-only row written for an invitation that will never be accepted."""
    if invitation.contact_id is None:
        return
    rows = db.execute(
        select(ExchangeParticipant).where(
            ExchangeParticipant.exchange_id == invitation.exchange_id,
            ExchangeParticipant.contact_id == invitation.contact_id,
            ExchangeParticipant.user_id.is_(None),
            ExchangeParticipant.is_active.is_(True),
        )
    ).scalars().all()
    for row in rows:
        participant_service.deactivate_participant(db, row.id)


def _expire(db: Session, invitation: Invitation) -> bool:
    """Move a lapsed pending invitation to expired and withdraw its grant."""
    if not _transition(db, invitation, InvitationStatus.EXPIRED):
        return False
    _release_contact_grant(db, invitation)
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.INVITATION_EXPIRED,
        target_type="invitation",
        target_id=invitation.id,
        details={"exchange_id": invitation.exchange_id},
    )
    return True


# =============================================================================
# Create
# =============================================================================

def _find_or_create_contact(db: Session, email: str, role: Role) -> Contact:
    matches = find_contacts_by_email(db, email)
    if len(matches) > 1:
        raise InvalidStateError(f"{len(matches)} contacts share the invited email")
    if matches:
        return matches[0]

    contact = Contact(email=email, contact_type=role.value)
    db.add(contact)
    db.flush()
    logger.info("Created contact for invited email", extra=build_log_context(contact_id=contact.id))
    return contact


def create_invitation(
    db: Session,
    exchange_id: UUID,
    data: InvitationCreate,
    invited_by_user_id: UUID | None = None,
) -> Invitation:
    """
    Invite an email to an exchange.

    Raises:
        NotFoundError: exchange does not exist
        ConflictError: a pending invitation already exists for this email, or
            the invitee is already an active participant
        InvalidStateError: the email matches several contacts
    """
    if not db.get(Exchange, exchange_id):
        raise NotFoundError(f"Exchange {exchange_id} not found")

    now = datetime.now(timezone.utc)
    pending = db.execute(
        select(Invitation).where(
            Invitation.exchange_id == exchange_id,
            Invitation.email == data.email,
            Invitation.status == InvitationStatus.PENDING.value,
        )
    ).scalars().all()
    for existing in pending:
        if effective_status(existing, now) is InvitationStatus.PENDING:
            raise ConflictError("A pending invitation already exists for this email")
        # Lapsed but never swept; its grant would block the new one
        _expire(db, existing)

    expiry_days = data.expires_in_days or settings.INVITATION_EXPIRY_DAYS
    invitation = Invitation(
        token=generate_token(),
        email=data.email,
        role=data.role.value,
        exchange_id=exchange_id,
        invited_by_user_id=invited_by_user_id,
        status=InvitationStatus.PENDING.value,
        expires_at=now + timedelta(days=expiry_days),
    )

    user = find_user_by_email(db, data.email)
    if user and user.is_active:
        identity = Identity(user_id=user.id, contact_id=user.contact_id, role=data.role)
        participant_service.add_participant(
            db, exchange_id, identity, data.role, assigned_by_user_id=invited_by_user_id
        )
        invitation.contact_id = user.contact_id
        invitation.status = InvitationStatus.ACCEPTED.value
        invitation.accepted_at = now
        invitation.accepted_by_user_id = user.id
    else:
        contact = _find_or_create_contact(db, data.email, data.role)
        identity = Identity(user_id=None, contact_id=contact.id, role=data.role)
        participant_service.add_participant(
            db, exchange_id, identity, data.role, assigned_by_user_id=invited_by_user_id
        )
        invitation.contact_id = contact.id

    db.add(invitation)
    db.flush()

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.INVITATION_CREATED,
        actor_user_id=invited_by_user_id,
        target_type="invitation",
        target_id=invitation.id,
        details={
            "exchange_id": exchange_id,
            "email": audit_service.hash_email(data.email),
            "role": data.role.value,
            "auto_accepted": invitation.status == InvitationStatus.ACCEPTED.value,
        },
    )
    return invitation


# =============================================================================
# Accept
# =============================================================================

def accept_invitation(db: Session, token: str, user_id: UUID) -> ExchangeParticipant:
    """
    Accept an invitation as a registered user and return their participant row.

    The expired status is flushed before InvalidStateError is raised; callers
    that want it persisted commit before handling the error.

    Raises:
        NotFoundError: unknown token or user
        InvalidStateError: not pending, past expiry, or the user's email differs
    """
    invitation = get_invitation(db, token)
    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise NotFoundError(f"User {user_id} not found")

    status = effective_status(invitation)
    if status is InvitationStatus.EXPIRED and invitation.status == InvitationStatus.PENDING.value:
        _expire(db, invitation)
        raise InvalidStateError("Invitation has expired")
    if status.is_terminal:
        raise InvalidStateError(f"Invitation is {status.value}")
    if user.email.strip().lower() != invitation.email.strip().lower():
        logger.warning(
            "Invitation accepted by a user with a different email",
            extra=build_log_context(user_id=user.id, exchange_id=invitation.exchange_id),
        )
        raise InvalidStateError("Invitation was sent to a different email")

    now = datetime.now(timezone.utc)
    if not _transition(
        db, invitation, InvitationStatus.ACCEPTED, accepted_at=now, accepted_by_user_id=user.id
    ):
        raise InvalidStateError("Invitation is no longer pending")

    reconciliation_service.reconcile_user(db, user.id)
    db.refresh(user)

    role = Role(invitation.role)
    identity = Identity(user_id=user.id, contact_id=user.contact_id, role=role)
    participant = _existing_participant(db, identity, invitation.exchange_id)
    if participant is None:
        try:
            participant = participant_service.add_participant(
                db,
                invitation.exchange_id,
                identity,
                role,
                assigned_by_user_id=invitation.invited_by_user_id,
            )
        except ConflictError:
            # Another acceptance or the sweep got there first
            participant = _existing_participant(db, identity, invitation.exchange_id)
            if participant is None:
                raise

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.INVITATION_ACCEPTED,
        actor_user_id=user.id,
        target_type="invitation",
        target_id=invitation.id,
        details={"exchange_id": invitation.exchange_id, "participant_id": participant.id},
    )
    logger.info(
        "Invitation accepted",
        extra=build_log_context(
            user_id=user.id, exchange_id=invitation.exchange_id, participant_id=participant.id
        ),
    )
    return participant


def _existing_participant(
    db: Session, identity: Identity, exchange_id: UUID
) -> ExchangeParticipant | None:
    rows = participant_service.list_participants_for_identity(db, identity, exchange_id)
    return rows[0] if rows else None


# =============================================================================
# Cancel / expire
# =============================================================================

def cancel_invitation(db: Session, token: str, actor_user_id: UUID | None = None) -> Invitation:
    """Cancel a pending invitation and withdraw its contact-only grant."""
    invitation = get_invitation(db, token)
    status = effective_status(invitation)
    if status.is_terminal:
        raise InvalidStateError(f"Cannot cancel an invitation that is {status.value}")

    if not _transition(
        db, invitation, InvitationStatus.CANCELLED, cancelled_at=datetime.now(timezone.utc)
    ):
        raise InvalidStateError("Invitation is no longer pending")
    _release_contact_grant(db, invitation)

    audit_service.log_event(
        db=db,
        event_type=AuditEventType.INVITATION_CANCELLED,
        actor_user_id=actor_user_id,
        target_type="invitation",
        target_id=invitation.id,
        details={"exchange_id": invitation.exchange_id},
    )
    return invitation


def expire_invitations(db: Session, now: datetime | None = None) -> int:
    """
    Mark pending invitations past expiry as expired.

    Returns count of invitations expired.
    """
    now = now or datetime.now(timezone.utc)
    candidates = db.execute(
        select(Invitation).where(
            Invitation.status == InvitationStatus.PENDING.value,
            Invitation.expires_at.is_not(None),
        )
    ).scalars().all()

    expired = 0
    for invitation in candidates:
        if effective_status(invitation, now) is not InvitationStatus.EXPIRED:
            continue
        if _expire(db, invitation):
            expired += 1

    if expired:
        logger.info("Expired %d invitations", expired)
    return expired
