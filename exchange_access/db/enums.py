"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    Participant roles.

    - ADMIN: Sees every exchange with full capabilities
    - COORDINATOR: Runs exchanges; primary coordinator gets a fast-path grant
    - CLIENT: The exchanger; primary client gets a fast-path grant
    - THIRD_PARTY: Outside party (escrow, title, lender); participant rows only
    - AGENCY: Sees exchanges of the third parties assigned to it
    """

    ADMIN = "admin"
    COORDINATOR = "coordinator"
    CLIENT = "client"
    THIRD_PARTY = "third_party"
    AGENCY = "agency"


class InvitationStatus(str, Enum):
    """Invitation lifecycle. Everything except PENDING is terminal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InvitationStatus.PENDING


class AuditEventType(str, Enum):
    """
    Access-relevant audit events.

    Groups:
    - PARTICIPANT_*: Exchange participant grants
    - IDENTITY_*: User/contact linkage changes
    - ASSIGNMENT_*: Agency to third-party delegation edges
    - INVITATION_*: Invitation lifecycle
    """

    # Participants
    PARTICIPANT_ADDED = "participant_added"
    PARTICIPANT_DEACTIVATED = "participant_deactivated"
    PARTICIPANT_PERMISSIONS_UPDATED = "participant_permissions_updated"
    PARTICIPANT_LINKED = "participant_linked"

    # Identity
    IDENTITY_CONTACT_LINKED = "identity_contact_linked"

    # Agency assignments
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_DEACTIVATED = "assignment_deactivated"

    # Invitations
    INVITATION_CREATED = "invitation_created"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_CANCELLED = "invitation_cancelled"
    INVITATION_EXPIRED = "invitation_expired"


# Roles whose primary fields on an exchange grant access without a participant row
ROLES_WITH_PRIMARY_GRANT = frozenset({Role.CLIENT, Role.COORDINATOR})
