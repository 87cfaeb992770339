"""Reconciliation: bind users to contacts and backfill participant keys.

Runs on invitation acceptance (reconcile_user) and as a periodic sweep
(reconcile). Every update is a single-row compare-and-set guarded by
`WHERE <key> IS NULL`, so running twice changes nothing and a crash
mid-sweep leaves a resumable state.

Never invents identities: a row with no match, or more than one, is
reported as an orphan and left untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from exchange_access.core.errors import ExchangeAccessError, NotFoundError, OrphanWarning
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.base import as_utc
from exchange_access.db.enums import AuditEventType, InvitationStatus
from exchange_access.db.models import ExchangeParticipant, Invitation, User
from exchange_access.services import audit_service
from exchange_access.services.identity_service import find_contacts_by_email

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of a reconciliation run."""

    users_linked: int = 0
    participants_linked: int = 0
    orphans: list[OrphanWarning] = field(default_factory=list)
    failures: list[tuple[UUID, str]] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return self.users_linked + self.participants_linked


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _users_for_contact(db: Session, contact_id: UUID) -> list[User]:
    return list(
        db.execute(
            select(User).where(User.contact_id == contact_id, User.is_active.is_(True))
        ).scalars().all()
    )


def _failure_reason(exc: Exception, row_type: str) -> str:
    # Driver messages carry the statement and bound parameters; keep them out of reports
    if isinstance(exc, IntegrityError):
        if row_type == "participant":
            return "would duplicate an active participant"
        return "violates a storage constraint"
    if isinstance(exc, ExchangeAccessError):
        return str(exc)
    return f"database error ({type(exc).__name__})"


def _run_isolated(
    db: Session,
    report: ReconciliationReport,
    row_type: str,
    row_id: UUID,
    commit: bool,
    fn,
) -> bool:
    """Run one row update in a savepoint; record a failure instead of raising."""
    try:
        with db.begin_nested():
            changed = fn()
    except (SQLAlchemyError, ExchangeAccessError) as exc:
        reason = _failure_reason(exc, row_type)
        logger.warning("Reconciliation failed for row %s: %s", row_id, reason)
        logger.debug("Reconciliation failure detail for row %s", row_id, exc_info=exc)
        report.failures.append((row_id, reason))
        return False
    if commit:
        db.commit()
    return changed


# =============================================================================
# User -> Contact
# =============================================================================

def _link_user(db: Session, user: User, report: ReconciliationReport, commit: bool) -> None:
    """Bind a contact-less user to the single contact sharing its email."""
    matches = find_contacts_by_email(db, user.email)
    if not matches:
        report.orphans.append(OrphanWarning("user", user.id, "no contact with matching email"))
        return
    if len(matches) > 1:
        report.orphans.append(
            OrphanWarning("user", user.id, f"{len(matches)} contacts share this email")
        )
        return

    contact = matches[0]
    if any(other.id != user.id for other in _users_for_contact(db, contact.id)):
        report.orphans.append(
            OrphanWarning("user", user.id, f"contact {contact.id} is linked to another user")
        )
        return

    def apply() -> bool:
        result = db.execute(
            update(User)
            .where(User.id == user.id, User.contact_id.is_(None))
            .values(contact_id=contact.id, updated_at=_now())
        )
        if result.rowcount != 1:
            return False
        audit_service.log_event(
            db=db,
            event_type=AuditEventType.IDENTITY_CONTACT_LINKED,
            target_type="user",
            target_id=user.id,
            details={"contact_id": contact.id},
        )
        return True

    if _run_isolated(db, report, "user", user.id, commit, apply):
        report.users_linked += 1
        logger.info(
            "Linked user to contact",
            extra=build_log_context(user_id=user.id, contact_id=contact.id),
        )


# =============================================================================
# Participant key backfill
# =============================================================================

def _invitation_lapsed(db: Session, row: ExchangeParticipant) -> bool:
    """True when the row's only source is a pending invitation already past expiry."""
    expiries = db.execute(
        select(Invitation.expires_at).where(
            Invitation.exchange_id == row.exchange_id,
            Invitation.contact_id == row.contact_id,
            Invitation.status == InvitationStatus.PENDING.value,
        )
    ).scalars().all()
    if not expiries:
        return False
    now = _now()
    return all(expires_at is not None and as_utc(expires_at) <= now for expires_at in expiries)


def _link_participant_user(
    db: Session,
    row: ExchangeParticipant,
    report: ReconciliationReport,
    commit: bool,
) -> None:
    """Fill user_id on a contact-only row from the user linked to its contact."""
    if _invitation_lapsed(db, row):
        # Left for the expiry sweep to withdraw
        report.orphans.append(OrphanWarning("participant", row.id, "invitation has expired"))
        return
    users = _users_for_contact(db, row.contact_id)
    if not users:
        report.orphans.append(
            OrphanWarning("participant", row.id, "no user linked to contact yet")
        )
        return
    if len(users) > 1:
        report.orphans.append(
            OrphanWarning("participant", row.id, f"{len(users)} users linked to contact")
        )
        return

    user_id = users[0].id

    def apply() -> bool:
        result = db.execute(
            update(ExchangeParticipant)
            .where(ExchangeParticipant.id == row.id, ExchangeParticipant.user_id.is_(None))
            .values(user_id=user_id, updated_at=_now())
        )
        if result.rowcount != 1:
            return False
        audit_service.log_event(
            db=db,
            event_type=AuditEventType.PARTICIPANT_LINKED,
            target_type="participant",
            target_id=row.id,
            details={"user_id": user_id, "exchange_id": row.exchange_id},
        )
        return True

    if _run_isolated(db, report, "participant", row.id, commit, apply):
        report.participants_linked += 1


def _link_participant_contact(
    db: Session,
    row: ExchangeParticipant,
    report: ReconciliationReport,
    commit: bool,
) -> None:
    """Fill contact_id on a user-only row once its user has a contact."""
    user = db.get(User, row.user_id)
    if user is None or user.contact_id is None:
        return
    contact_id = user.contact_id

    def apply() -> bool:
        result = db.execute(
            update(ExchangeParticipant)
            .where(ExchangeParticipant.id == row.id, ExchangeParticipant.contact_id.is_(None))
            .values(contact_id=contact_id, updated_at=_now())
        )
        if result.rowcount != 1:
            return False
        audit_service.log_event(
            db=db,
            event_type=AuditEventType.PARTICIPANT_LINKED,
            target_type="participant",
            target_id=row.id,
            details={"contact_id": contact_id, "exchange_id": row.exchange_id},
        )
        return True

    if _run_isolated(db, report, "participant", row.id, commit, apply):
        report.participants_linked += 1


def _check_divergent(db: Session, report: ReconciliationReport, rows: list[ExchangeParticipant]) -> None:
    """Report rows whose user and contact keys point at different people."""
    for row in rows:
        user = db.get(User, row.user_id)
        if user is None or user.contact_id is None or user.contact_id == row.contact_id:
            continue
        logger.error(
            "InvalidStateError: participant keys diverge, user is linked to contact %s",
            user.contact_id,
            extra=build_log_context(
                participant_id=row.id, user_id=row.user_id, contact_id=row.contact_id
            ),
        )
        report.failures.append(
            (row.id, f"user {row.user_id} is linked to contact {user.contact_id}, not {row.contact_id}")
        )


def _backfill_participants(
    db: Session,
    report: ReconciliationReport,
    commit: bool,
    user: User | None = None,
) -> None:
    active = ExchangeParticipant.is_active.is_(True)

    contact_only = select(ExchangeParticipant).where(
        active,
        ExchangeParticipant.user_id.is_(None),
        ExchangeParticipant.contact_id.is_not(None),
    )
    user_only = select(ExchangeParticipant).where(
        active,
        ExchangeParticipant.contact_id.is_(None),
        ExchangeParticipant.user_id.is_not(None),
    )
    both = select(ExchangeParticipant).where(
        active,
        ExchangeParticipant.contact_id.is_not(None),
        ExchangeParticipant.user_id.is_not(None),
    )
    if user is not None:
        if user.contact_id is None:
            contact_only = None
        else:
            contact_only = contact_only.where(ExchangeParticipant.contact_id == user.contact_id)
        user_only = user_only.where(ExchangeParticipant.user_id == user.id)
        both = both.where(ExchangeParticipant.user_id == user.id)

    if contact_only is not None:
        for row in db.execute(contact_only).scalars().all():
            _link_participant_user(db, row, report, commit)
    for row in db.execute(user_only).scalars().all():
        _link_participant_contact(db, row, report, commit)
    _check_divergent(db, report, list(db.execute(both).scalars().all()))


# =============================================================================
# Entry points
# =============================================================================

def reconcile(db: Session, commit: bool = False) -> ReconciliationReport:
    """
    Full sweep: link contact-less users, then backfill participant keys.

    With commit=True each row is committed on its own; otherwise the caller
    owns the transaction.
    """
    report = ReconciliationReport()

    unlinked_users = db.execute(
        select(User).where(User.contact_id.is_(None), User.is_active.is_(True))
    ).scalars().all()
    for user in unlinked_users:
        _link_user(db, user, report, commit)

    _backfill_participants(db, report, commit)

    logger.info(
        "Reconciliation finished users_linked=%d participants_linked=%d orphans=%d failures=%d",
        report.users_linked,
        report.participants_linked,
        len(report.orphans),
        len(report.failures),
    )
    return report


def reconcile_user(db: Session, user_id: UUID, commit: bool = False) -> ReconciliationReport:
    """Link one user to its contact and backfill that person's participant rows."""
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    report = ReconciliationReport()
    if user.contact_id is None:
        _link_user(db, user, report, commit)
        db.refresh(user)

    _backfill_participants(db, report, commit, user=user)
    return report
