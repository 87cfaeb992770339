"""Tests for the invitation lifecycle."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from exchange_access.core.errors import ConflictError, InvalidStateError, NotFoundError
from exchange_access.db.enums import AuditEventType, InvitationStatus, Role
from exchange_access.schemas.identity import Principal
from exchange_access.schemas.invitation import InvitationCreate, InvitationRead
from exchange_access.services import (
    audit_service,
    identity_service,
    invitation_service,
    participant_service,
    reconciliation_service,
    visibility_service,
)


def _invite(db, exchange, email="invitee@example.com", role=Role.CLIENT, days=None):
    return invitation_service.create_invitation(
        db, exchange.id, InvitationCreate(email=email, role=role, expires_in_days=days)
    )


def test_invitation_schema_lowercases_email():
    data = InvitationCreate(email="Someone@Example.COM", role="client")
    assert data.email == "someone@example.com"


def test_invitation_schema_rejects_bad_input():
    with pytest.raises(ValidationError):
        InvitationCreate(email="not-an-email", role="client")
    with pytest.raises(ValidationError):
        InvitationCreate(email="a@example.com", role="landlord")


def test_invite_unknown_email_creates_contact_only_row(db, test_exchange):
    invitation = _invite(db, test_exchange)

    assert invitation.status == InvitationStatus.PENDING.value
    assert len(invitation.token) == 64
    assert invitation.contact_id is not None
    [row] = participant_service.list_participants_for_exchange(db, test_exchange.id)
    assert row.contact_id == invitation.contact_id
    assert row.user_id is None


def test_invite_reuses_existing_contact(db, test_exchange, make_contact):
    contact = make_contact(email="known@example.com")

    invitation = _invite(db, test_exchange, email="Known@example.com")

    assert invitation.contact_id == contact.id


def test_invite_default_expiry(db, test_exchange):
    invitation = _invite(db, test_exchange)
    expected = datetime.now(timezone.utc) + timedelta(days=7)
    assert abs(invitation.expires_at - expected) < timedelta(minutes=1)


def test_invite_existing_user_is_auto_accepted(db, test_exchange, make_user):
    user = make_user(role=Role.THIRD_PARTY, email="member@example.com")

    invitation = _invite(db, test_exchange, email="member@example.com", role=Role.THIRD_PARTY)

    assert invitation.status == InvitationStatus.ACCEPTED.value
    assert invitation.accepted_by_user_id == user.id
    identity = identity_service.resolve_identity(db, Principal(user_id=user.id))
    assert test_exchange.id in visibility_service.get_visible_exchanges(db, identity)


def test_duplicate_pending_invitation_conflicts(db, test_exchange):
    _invite(db, test_exchange)
    with pytest.raises(ConflictError):
        _invite(db, test_exchange)


def test_invite_unknown_exchange(db):
    with pytest.raises(NotFoundError):
        invitation_service.create_invitation(
            db, uuid.uuid4(), InvitationCreate(email="a@example.com", role=Role.CLIENT)
        )


def test_invitation_read_hides_token(db, test_exchange):
    read = InvitationRead.model_validate(_invite(db, test_exchange))
    assert "token" not in read.model_dump()
    assert read.status is InvitationStatus.PENDING


class TestAccept:
    def test_accept_binds_user_to_existing_row(self, db, test_exchange, make_user):
        invitation = _invite(db, test_exchange, email="new@example.com")
        user = make_user(role=Role.CLIENT, email="new@example.com")

        participant = invitation_service.accept_invitation(db, invitation.token, user.id)

        assert participant.user_id == user.id
        assert participant.contact_id == invitation.contact_id
        assert invitation.status == InvitationStatus.ACCEPTED.value
        assert len(participant_service.list_participants_for_exchange(db, test_exchange.id)) == 1
        db.refresh(user)
        assert user.contact_id == invitation.contact_id

        events = audit_service.list_events_for_target(db, "invitation", invitation.id)
        assert AuditEventType.INVITATION_ACCEPTED.value in [e.event_type for e in events]

    def test_accept_twice_is_rejected(self, db, test_exchange, make_user):
        invitation = _invite(db, test_exchange, email="twice@example.com")
        user = make_user(email="twice@example.com")
        invitation_service.accept_invitation(db, invitation.token, user.id)

        with pytest.raises(InvalidStateError):
            invitation_service.accept_invitation(db, invitation.token, user.id)

    def test_accept_unknown_token(self, db, make_user):
        with pytest.raises(NotFoundError):
            invitation_service.accept_invitation(db, "nope", make_user().id)

    def test_accept_with_other_email(self, db, test_exchange, make_user):
        invitation = _invite(db, test_exchange, email="right@example.com")
        wrong = make_user(email="wrong@example.com")

        with pytest.raises(InvalidStateError):
            invitation_service.accept_invitation(db, invitation.token, wrong.id)
        assert invitation.status == InvitationStatus.PENDING.value

    def test_accept_expired_marks_expired(self, db, test_exchange, make_user):
        invitation = _invite(db, test_exchange, email="late@example.com")
        invitation.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.flush()
        user = make_user(email="late@example.com")

        with pytest.raises(InvalidStateError):
            invitation_service.accept_invitation(db, invitation.token, user.id)

        assert invitation.status == InvitationStatus.EXPIRED.value
        assert participant_service.list_participants_for_exchange(db, test_exchange.id) == []


class TestCancelAndExpire:
    def test_cancel_withdraws_contact_grant(self, db, test_exchange):
        invitation = _invite(db, test_exchange)

        invitation_service.cancel_invitation(db, invitation.token)

        assert invitation.status == InvitationStatus.CANCELLED.value
        assert invitation.cancelled_at is not None
        assert participant_service.list_participants_for_exchange(db, test_exchange.id) == []

    def test_cancel_terminal_invitation(self, db, test_exchange, make_user):
        make_user(email="member@example.com")
        invitation = _invite(db, test_exchange, email="member@example.com")

        with pytest.raises(InvalidStateError):
            invitation_service.cancel_invitation(db, invitation.token)

    def test_reinvite_after_cancel(self, db, test_exchange):
        first = _invite(db, test_exchange)
        invitation_service.cancel_invitation(db, first.token)

        second = _invite(db, test_exchange)

        assert second.status == InvitationStatus.PENDING.value
        assert second.contact_id == first.contact_id

    def test_expire_sweep(self, db, make_exchange):
        stale = _invite(db, make_exchange(), email="stale@example.com")
        fresh = _invite(db, make_exchange(), email="fresh@example.com", days=30)

        count = invitation_service.expire_invitations(
            db, now=datetime.now(timezone.utc) + timedelta(days=8)
        )

        assert count == 1
        assert stale.status == InvitationStatus.EXPIRED.value
        assert fresh.status == InvitationStatus.PENDING.value
        assert invitation_service.expire_invitations(
            db, now=datetime.now(timezone.utc) + timedelta(days=8)
        ) == 0

    def test_effective_status(self, db, test_exchange):
        invitation = _invite(db, test_exchange)
        later = datetime.now(timezone.utc) + timedelta(days=8)

        assert invitation_service.effective_status(invitation) is InvitationStatus.PENDING
        assert invitation_service.effective_status(invitation, later) is InvitationStatus.EXPIRED

    def test_reinvite_after_unswept_expiry(self, db, test_exchange):
        first = _invite(db, test_exchange)
        first.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.flush()

        second = _invite(db, test_exchange)

        assert first.status == InvitationStatus.EXPIRED.value
        assert second.status == InvitationStatus.PENDING.value
        [row] = participant_service.list_participants_for_exchange(db, test_exchange.id)
        assert row.contact_id == second.contact_id
        events = audit_service.list_events_for_target(db, "invitation", first.id)
        assert AuditEventType.INVITATION_EXPIRED.value in [e.event_type for e in events]

    def test_sweep_does_not_bind_lapsed_invitation(self, db, test_exchange, make_user):
        invitation = _invite(db, test_exchange, email="lapsed@example.com")
        invitation.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.flush()
        user = make_user(email="lapsed@example.com")

        report = reconciliation_service.reconcile(db)

        assert report.participants_linked == 0
        assert "invitation has expired" in [o.reason for o in report.orphans]
        [row] = participant_service.list_participants_for_exchange(db, test_exchange.id)
        assert row.user_id is None

        invitation_service.expire_invitations(db)

        identity = identity_service.resolve_identity(db, Principal(user_id=user.id))
        assert visibility_service.get_visible_exchanges(db, identity) == {}
