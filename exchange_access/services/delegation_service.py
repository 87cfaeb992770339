"""Agency delegation: agency -> assigned third parties -> their exchanges.

Assignments are contact-to-contact edges. An agency sees every exchange an
assigned third party actively participates in, with a capped view-only
profile (see capability_service.delegated_capabilities).
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exchange_access.core.config import settings
from exchange_access.core.errors import ConflictError, InvalidStateError, NotFoundError
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.enums import AuditEventType
from exchange_access.db.models import (
    AgencyThirdPartyAssignment,
    Contact,
    ExchangeParticipant,
    User,
)
from exchange_access.services import audit_service
from exchange_access.services.identity_service import Identity

logger = logging.getLogger(__name__)


# =============================================================================
# Assignment management
# =============================================================================

def assign_third_party(
    db: Session,
    agency_contact_id: UUID,
    third_party_contact_id: UUID,
    can_view_performance: bool = True,
    performance_score: int | None = None,
    assigned_by_user_id: UUID | None = None,
) -> AgencyThirdPartyAssignment:
    """
    Create an active assignment edge.

    Raises:
        InvalidStateError: agency and third party are the same contact
        NotFoundError: either contact is unknown
        ConflictError: the pair already has an active assignment
    """
    if agency_contact_id == third_party_contact_id:
        raise InvalidStateError("An agency cannot be assigned to itself")
    for contact_id in (agency_contact_id, third_party_contact_id):
        if not db.get(Contact, contact_id):
            raise NotFoundError(f"Contact {contact_id} not found")

    if performance_score is None:
        performance_score = settings.DEFAULT_PERFORMANCE_SCORE

    assignment = AgencyThirdPartyAssignment(
        agency_contact_id=agency_contact_id,
        third_party_contact_id=third_party_contact_id,
        is_active=True,
        can_view_performance=can_view_performance,
        performance_score=performance_score,
        assigned_by_user_id=assigned_by_user_id,
    )
    try:
        with db.begin_nested():
            db.add(assignment)
            db.flush()
    except IntegrityError:
        raise ConflictError(
            f"Third party {third_party_contact_id} is already assigned to agency {agency_contact_id}"
        )

    logger.info(
        "Third party %s assigned to agency",
        third_party_contact_id,
        extra=build_log_context(contact_id=agency_contact_id),
    )
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.ASSIGNMENT_CREATED,
        actor_user_id=assigned_by_user_id,
        target_type="assignment",
        target_id=assignment.id,
        details={
            "agency_contact_id": agency_contact_id,
            "third_party_contact_id": third_party_contact_id,
            "can_view_performance": can_view_performance,
        },
    )
    return assignment


def _deactivate(
    db: Session,
    assignment: AgencyThirdPartyAssignment,
    actor_user_id: UUID | None,
) -> None:
    assignment.is_active = False
    assignment.updated_at = datetime.now(timezone.utc)
    db.flush()
    audit_service.log_event(
        db=db,
        event_type=AuditEventType.ASSIGNMENT_DEACTIVATED,
        actor_user_id=actor_user_id,
        target_type="assignment",
        target_id=assignment.id,
        details={
            "agency_contact_id": assignment.agency_contact_id,
            "third_party_contact_id": assignment.third_party_contact_id,
        },
    )


def deactivate_assignment(
    db: Session,
    assignment_id: UUID,
    actor_user_id: UUID | None = None,
) -> AgencyThirdPartyAssignment:
    """Soft-delete one assignment. Already inactive is a no-op."""
    assignment = db.get(AgencyThirdPartyAssignment, assignment_id)
    if not assignment:
        raise NotFoundError(f"Assignment {assignment_id} not found")
    if assignment.is_active:
        _deactivate(db, assignment, actor_user_id)
    return assignment


def remove_third_parties(
    db: Session,
    agency_contact_id: UUID,
    third_party_contact_ids: list[UUID],
    actor_user_id: UUID | None = None,
) -> int:
    """Deactivate the agency's active assignments to the given third parties. Returns count."""
    if not third_party_contact_ids:
        return 0
    assignments = db.execute(
        select(AgencyThirdPartyAssignment).where(
            AgencyThirdPartyAssignment.agency_contact_id == agency_contact_id,
            AgencyThirdPartyAssignment.third_party_contact_id.in_(third_party_contact_ids),
            AgencyThirdPartyAssignment.is_active.is_(True),
        )
    ).scalars().all()
    for assignment in assignments:
        _deactivate(db, assignment, actor_user_id)
    return len(assignments)


def list_assignments(
    db: Session,
    agency_contact_id: UUID,
    include_inactive: bool = False,
) -> list[AgencyThirdPartyAssignment]:
    """Assignments for an agency, newest first."""
    query = select(AgencyThirdPartyAssignment).where(
        AgencyThirdPartyAssignment.agency_contact_id == agency_contact_id
    )
    if not include_inactive:
        query = query.where(AgencyThirdPartyAssignment.is_active.is_(True))
    query = query.order_by(AgencyThirdPartyAssignment.created_at.desc())
    return list(db.execute(query).scalars().all())


# =============================================================================
# Delegated visibility
# =============================================================================

def resolve_delegated_exchanges(db: Session, identity: Identity) -> dict[UUID, bool]:
    """
    Exchanges visible to an agency through its assigned third parties.

    Returns {exchange_id: can_view_performance}. The flag is OR-ed across
    every assignment that reaches the exchange. An agency identity without a
    contact has no assignments and gets an empty map.
    """
    if identity.contact_id is None:
        return {}

    assignments = db.execute(
        select(
            AgencyThirdPartyAssignment.third_party_contact_id,
            AgencyThirdPartyAssignment.can_view_performance,
        ).where(
            AgencyThirdPartyAssignment.agency_contact_id == identity.contact_id,
            AgencyThirdPartyAssignment.is_active.is_(True),
        )
    ).all()
    if not assignments:
        return {}

    performance_by_contact: dict[UUID, bool] = {}
    for contact_id, can_view_performance in assignments:
        performance_by_contact[contact_id] = (
            performance_by_contact.get(contact_id, False) or bool(can_view_performance)
        )

    # Third parties may hold user-only rows, so match their linked users too
    user_rows = db.execute(
        select(User.id, User.contact_id).where(
            User.contact_id.in_(list(performance_by_contact))
        )
    ).all()
    contact_by_user = {user_id: contact_id for user_id, contact_id in user_rows}

    clauses = [ExchangeParticipant.contact_id.in_(list(performance_by_contact))]
    if contact_by_user:
        clauses.append(ExchangeParticipant.user_id.in_(list(contact_by_user)))

    rows = db.execute(
        select(
            ExchangeParticipant.exchange_id,
            ExchangeParticipant.contact_id,
            ExchangeParticipant.user_id,
        ).where(
            or_(*clauses),
            ExchangeParticipant.is_active.is_(True),
        )
    ).all()

    delegated: dict[UUID, bool] = {}
    for exchange_id, contact_id, user_id in rows:
        third_party = contact_id if contact_id in performance_by_contact else contact_by_user.get(user_id)
        if third_party is None:
            continue
        delegated[exchange_id] = delegated.get(exchange_id, False) or performance_by_contact[third_party]

    logger.debug(
        "Agency reaches %d exchanges through %d assignments",
        len(delegated),
        len(assignments),
        extra=build_log_context(contact_id=identity.contact_id),
    )
    return delegated


def delegated_exchange_ids(db: Session, identity: Identity) -> set[UUID]:
    """Exchange ids visible to an agency through delegation."""
    return set(resolve_delegated_exchanges(db, identity))
