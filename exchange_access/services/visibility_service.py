"""Exchange visibility: which exchanges an identity sees and with what capabilities.

Every feature that lists or touches exchange data scopes its queries through
this module. Grants come from three paths and are merged by union of exchange
ids and per-key OR of capabilities:

- primary fields on the exchange (client_id / coordinator_id)
- participant rows matching user_id OR contact_id
- agency delegation through assigned third parties

Admins see every exchange with the full template.
"""

import logging
from collections import defaultdict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from exchange_access.core.capabilities import get_role_template, is_valid_capability
from exchange_access.core.errors import CapabilityDeniedError, NotFoundError
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.enums import ROLES_WITH_PRIMARY_GRANT, Role
from exchange_access.db.models import Exchange
from exchange_access.services import delegation_service, participant_service
from exchange_access.services.capability_service import (
    CapabilitySet,
    delegated_capabilities,
    merge_capabilities,
    normalize_permissions,
)
from exchange_access.services.identity_service import Identity

logger = logging.getLogger(__name__)


def _primary_exchange_ids(
    db: Session,
    identity: Identity,
    exchange_id: UUID | None,
) -> list[UUID]:
    """Exchanges granted through the exchange's own client/coordinator fields."""
    if identity.role == Role.CLIENT:
        condition = Exchange.client_id.in_(identity.keys)
    elif identity.role == Role.COORDINATOR:
        if identity.user_id is None:
            return []
        condition = Exchange.coordinator_id == identity.user_id
    else:
        return []

    query = select(Exchange.id).where(condition)
    if exchange_id is not None:
        query = query.where(Exchange.id == exchange_id)
    return list(db.execute(query).scalars().all())


def _collect(
    db: Session,
    identity: Identity,
    exchange_id: UUID | None = None,
) -> dict[UUID, CapabilitySet]:
    """Resolve grants for every exchange, or just one when exchange_id is given."""
    if identity.role == Role.ADMIN:
        query = select(Exchange.id)
        if exchange_id is not None:
            query = query.where(Exchange.id == exchange_id)
        template = get_role_template(Role.ADMIN.value)
        return {eid: dict(template) for eid in db.execute(query).scalars().all()}

    grants: dict[UUID, list[CapabilitySet]] = defaultdict(list)

    if identity.role in ROLES_WITH_PRIMARY_GRANT:
        template = get_role_template(identity.role.value)
        for eid in _primary_exchange_ids(db, identity, exchange_id):
            grants[eid].append(template)

    for row in participant_service.list_participants_for_identity(db, identity, exchange_id):
        grants[row.exchange_id].append(normalize_permissions(row.permissions, row.role))

    if identity.role == Role.AGENCY:
        for eid, can_view_performance in delegation_service.resolve_delegated_exchanges(
            db, identity
        ).items():
            if exchange_id is not None and eid != exchange_id:
                continue
            grants[eid].append(delegated_capabilities(can_view_performance))

    return {eid: merge_capabilities(sets) for eid, sets in grants.items()}


def get_visible_exchanges(db: Session, identity: Identity) -> dict[UUID, CapabilitySet]:
    """
    Map every exchange visible to the identity to its effective capabilities.

    No visible exchanges is an empty map, not an error.
    """
    visible = _collect(db, identity)
    logger.debug(
        "Resolved %d visible exchanges",
        len(visible),
        extra=build_log_context(
            user_id=identity.user_id,
            contact_id=identity.contact_id,
            role=identity.role.value,
        ),
    )
    return visible


def get_exchange_capabilities(
    db: Session,
    identity: Identity,
    exchange_id: UUID,
) -> CapabilitySet:
    """
    Capabilities on one exchange.

    Raises NotFoundError when the exchange is not visible, whether or not it
    exists, so callers cannot enumerate exchange ids.
    """
    capabilities = _collect(db, identity, exchange_id).get(exchange_id)
    if capabilities is None:
        raise NotFoundError(f"Exchange {exchange_id} not found")
    return capabilities


def has_capability(
    db: Session,
    identity: Identity,
    exchange_id: UUID,
    capability_key: str,
) -> bool:
    """True iff the exchange is visible and the capability is granted."""
    if not is_valid_capability(capability_key):
        raise ValueError(f"Unknown capability: {capability_key}")
    capabilities = _collect(db, identity, exchange_id).get(exchange_id)
    return bool(capabilities and capabilities[capability_key])


def require_capability(
    db: Session,
    identity: Identity,
    exchange_id: UUID,
    capability_key: str,
) -> CapabilitySet:
    """
    Guard for exchange-scoped operations.

    Returns the capability set so callers can make further checks without a
    second resolution.
    """
    if not is_valid_capability(capability_key):
        raise ValueError(f"Unknown capability: {capability_key}")
    capabilities = get_exchange_capabilities(db, identity, exchange_id)
    if not capabilities[capability_key]:
        logger.info(
            "Capability %s denied",
            capability_key,
            extra=build_log_context(
                user_id=identity.user_id,
                contact_id=identity.contact_id,
                exchange_id=exchange_id,
            ),
        )
        raise CapabilityDeniedError(
            f"Missing capability {capability_key} on exchange {exchange_id}"
        )
    return capabilities
