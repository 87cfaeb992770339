"""Identity resolution: who is asking, as a canonical (user_id, contact_id, role).

The resolver never binds a user to a contact. A contact found by email is
returned as a hint only; binding belongs to reconciliation, which also
writes the audit trail.
"""

import logging
from dataclasses import dataclass, field, replace
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from exchange_access.core.errors import InvalidStateError, NotFoundError
from exchange_access.core.structured_logging import build_log_context
from exchange_access.db.enums import Role
from exchange_access.db.models import Contact, User
from exchange_access.schemas.identity import Principal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Canonical identity used for every access decision."""
    user_id: UUID | None
    contact_id: UUID | None
    role: Role
    # Contact matched by email but not yet bound; never used for access
    contact_hint: UUID | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.user_id is None and self.contact_id is None:
            raise InvalidStateError("Identity needs a user_id or a contact_id")

    @property
    def keys(self) -> tuple[UUID, ...]:
        """Non-null identity keys."""
        return tuple(k for k in (self.user_id, self.contact_id) if k is not None)


def _coerce_role(value: Role | str) -> Role:
    return value if isinstance(value, Role) else Role(value)


def find_contacts_by_email(db: Session, email: str) -> list[Contact]:
    """Contacts whose email matches exactly, ignoring case."""
    if not email:
        return []
    return list(
        db.execute(
            select(Contact).where(func.lower(Contact.email) == email.strip().lower())
        ).scalars().all()
    )


def find_user_by_email(db: Session, email: str) -> User | None:
    """User with this email, ignoring case."""
    return db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    ).scalar_one_or_none()


def resolve_identity(db: Session, principal: Principal) -> Identity:
    """
    Turn an authenticated principal into a canonical Identity.

    Raises NotFoundError for unknown or deactivated users. A user without a
    linked contact still resolves (contact_id=None); admin and primary-field
    grants keep working without it.
    """
    user = db.get(User, principal.user_id)
    if not user or not user.is_active:
        raise NotFoundError(f"User {principal.user_id} not found")

    role = _coerce_role(user.role)
    if principal.role is not None and principal.role != role:
        logger.warning(
            "Principal role claim differs from stored role, using stored role",
            extra=build_log_context(user_id=user.id, role=role.value),
        )

    hint = None
    if user.contact_id is None:
        matches = find_contacts_by_email(db, user.email)
        if len(matches) == 1:
            hint = matches[0].id
            logger.info(
                "User has no linked contact; email matches contact %s (not bound)",
                hint,
                extra=build_log_context(user_id=user.id),
            )

    return Identity(
        user_id=user.id,
        contact_id=user.contact_id,
        role=role,
        contact_hint=hint,
    )


def resolve_contact_identity(db: Session, contact_id: UUID, role: Role | str) -> Identity:
    """
    Identity for a contact that may not have logged in yet.

    If a user is already linked to the contact, its user_id is included so
    both participant keys are checked.
    """
    contact = db.get(Contact, contact_id)
    if not contact:
        raise NotFoundError(f"Contact {contact_id} not found")

    return Identity(
        user_id=_linked_user_id(db, contact.id),
        contact_id=contact.id,
        role=_coerce_role(role),
    )


def _linked_user_id(db: Session, contact_id: UUID) -> UUID | None:
    """The one active user linked to a contact, or None when zero or several."""
    user_ids = db.execute(
        select(User.id).where(User.contact_id == contact_id, User.is_active.is_(True))
    ).scalars().all()
    return user_ids[0] if len(user_ids) == 1 else None


def complete_identity(db: Session, identity: Identity) -> Identity:
    """
    Fill a missing key from the stored user/contact link.

    A user-only identity gains the user's linked contact; a contact-only one
    gains the single user linked to that contact. Writes made with the
    completed identity hit both uniqueness constraints, so the same person
    cannot hold one row per key on an exchange.
    """
    user_id, contact_id = identity.user_id, identity.contact_id
    if contact_id is None:
        user = db.get(User, user_id)
        if user is not None:
            contact_id = user.contact_id
    elif user_id is None:
        user_id = _linked_user_id(db, contact_id)

    if (user_id, contact_id) == (identity.user_id, identity.contact_id):
        return identity
    return replace(identity, user_id=user_id, contact_id=contact_id)


def assert_consistent(db: Session, identity: Identity) -> None:
    """
    Reject identities whose user and contact keys point at different people.

    A user already linked to a different contact is an InvalidStateError; an
    unlinked user is accepted and left for reconciliation.
    """
    if identity.user_id is None or identity.contact_id is None:
        return

    user = db.get(User, identity.user_id)
    if not user:
        raise NotFoundError(f"User {identity.user_id} not found")
    if user.contact_id is not None and user.contact_id != identity.contact_id:
        logger.error(
            "Identity keys diverge: user is linked to contact %s",
            user.contact_id,
            extra=build_log_context(user_id=user.id, contact_id=identity.contact_id),
        )
        raise InvalidStateError(
            f"User {user.id} is linked to contact {user.contact_id}, not {identity.contact_id}"
        )
