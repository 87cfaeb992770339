"""Tests for the participant store."""

import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from exchange_access.core.capabilities import get_role_template
from exchange_access.core.errors import ConflictError, InvalidStateError, NotFoundError
from exchange_access.db.enums import AuditEventType, Role
from exchange_access.db.models import ExchangeParticipant
from exchange_access.services import audit_service, participant_service, reconciliation_service
from exchange_access.services.capability_service import is_normalized
from exchange_access.services.identity_service import Identity


def _identity(user=None, contact=None, role=Role.THIRD_PARTY) -> Identity:
    return Identity(
        user_id=user.id if user else None,
        contact_id=contact.id if contact else None,
        role=role,
    )


def test_add_participant_stores_normalized_permissions(db, test_exchange, make_user):
    user = make_user(role=Role.THIRD_PARTY)

    participant = participant_service.add_participant(
        db, test_exchange.id, _identity(user=user), Role.THIRD_PARTY, permissions=["read", "comment"]
    )

    assert is_normalized(participant.permissions)
    assert participant.permissions["can_send_messages"] is True
    assert participant.permissions["can_edit"] is False


def test_add_participant_is_audited(db, test_exchange, make_contact):
    contact = make_contact()
    participant = participant_service.add_participant(
        db, test_exchange.id, _identity(contact=contact), Role.CLIENT
    )

    events = audit_service.list_events_for_target(db, "participant", participant.id)
    assert [e.event_type for e in events] == [AuditEventType.PARTICIPANT_ADDED.value]


def test_second_add_for_same_user_conflicts(db, test_exchange, make_user):
    user = make_user()
    participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)

    with pytest.raises(ConflictError):
        participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)

    # Session is still usable after the conflict
    rows = participant_service.list_participants_for_exchange(db, test_exchange.id)
    assert len(rows) == 1


def test_second_add_for_same_contact_conflicts(db, test_exchange, make_contact):
    contact = make_contact()
    participant_service.add_participant(db, test_exchange.id, _identity(contact=contact), Role.CLIENT)

    with pytest.raises(ConflictError):
        participant_service.add_participant(
            db, test_exchange.id, _identity(contact=contact), Role.THIRD_PARTY
        )


def test_user_row_conflicts_with_contact_only_row_for_same_person(
    db, test_exchange, make_user, make_contact
):
    contact = make_contact()
    user = make_user(contact=contact)
    participant_service.add_participant(db, test_exchange.id, _identity(contact=contact), Role.CLIENT)

    with pytest.raises(ConflictError):
        participant_service.add_participant(
            db, test_exchange.id, _identity(user=user, contact=contact), Role.CLIENT
        )


def test_user_only_add_conflicts_with_contact_row_of_linked_user(
    db, test_exchange, make_user, make_contact
):
    contact = make_contact()
    user = make_user(contact=contact)
    participant_service.add_participant(db, test_exchange.id, _identity(contact=contact), Role.CLIENT)

    with pytest.raises(ConflictError):
        participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)

    assert len(participant_service.list_participants_for_exchange(db, test_exchange.id)) == 1


def test_contact_only_add_conflicts_with_user_row_of_linked_contact(
    db, test_exchange, make_user, make_contact
):
    contact = make_contact()
    user = make_user(contact=contact)
    participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)

    with pytest.raises(ConflictError):
        participant_service.add_participant(
            db, test_exchange.id, _identity(contact=contact), Role.CLIENT
        )

    assert len(participant_service.list_participants_for_exchange(db, test_exchange.id)) == 1


def test_add_fills_missing_key_from_stored_link(db, make_exchange, make_user, make_contact):
    contact = make_contact()
    user = make_user(contact=contact)

    by_user = participant_service.add_participant(
        db, make_exchange().id, _identity(user=user), Role.CLIENT
    )
    by_contact = participant_service.add_participant(
        db, make_exchange().id, _identity(contact=contact), Role.CLIENT
    )

    assert (by_user.user_id, by_user.contact_id) == (user.id, contact.id)
    assert (by_contact.user_id, by_contact.contact_id) == (user.id, contact.id)
    assert reconciliation_service.reconcile(db).failures == []


def test_readd_after_deactivation(db, test_exchange, make_user):
    user = make_user()
    first = participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)
    participant_service.deactivate_participant(db, first.id)

    second = participant_service.add_participant(db, test_exchange.id, _identity(user=user), Role.CLIENT)

    assert second.id != first.id
    assert db.get(ExchangeParticipant, first.id).is_active is False


def test_add_to_unknown_exchange(db, make_user):
    with pytest.raises(NotFoundError):
        participant_service.add_participant(
            db, uuid.uuid4(), _identity(user=make_user()), Role.CLIENT
        )


def test_add_rejects_divergent_identity(db, test_exchange, make_user, make_contact):
    user = make_user(contact=make_contact())
    stranger = make_contact()

    with pytest.raises(InvalidStateError):
        participant_service.add_participant(
            db, test_exchange.id, _identity(user=user, contact=stranger), Role.CLIENT
        )


def test_storage_rejects_row_without_identity(db, test_exchange):
    row = ExchangeParticipant(exchange_id=test_exchange.id, role="client", is_active=True)
    with pytest.raises(IntegrityError):
        with db.begin_nested():
            db.add(row)
            db.flush()


def test_deactivate_is_idempotent(db, test_exchange, make_user):
    participant = participant_service.add_participant(
        db, test_exchange.id, _identity(user=make_user()), Role.CLIENT
    )

    participant_service.deactivate_participant(db, participant.id)
    participant_service.deactivate_participant(db, participant.id)

    events = audit_service.list_events_for_target(db, "participant", participant.id)
    deactivations = [e for e in events if e.event_type == AuditEventType.PARTICIPANT_DEACTIVATED.value]
    assert len(deactivations) == 1


def test_get_participant_not_found(db):
    with pytest.raises(NotFoundError):
        participant_service.get_participant(db, uuid.uuid4())


def test_list_for_exchange_normalizes_legacy_rows(db, test_exchange, make_user):
    user = make_user()
    db.add(
        ExchangeParticipant(
            exchange_id=test_exchange.id,
            user_id=user.id,
            role="coordinator",
            permissions=["read", "comment"],
            is_active=True,
        )
    )
    db.flush()

    [row] = participant_service.list_participants_for_exchange(db, test_exchange.id)

    assert row.permissions["can_send_messages"] is True
    assert row.permissions["can_view_performance"] is True
    assert row.permissions["can_delete"] is False


def test_list_for_exchange_excludes_inactive(db, test_exchange, make_user):
    keep = participant_service.add_participant(
        db, test_exchange.id, _identity(user=make_user()), Role.CLIENT
    )
    drop = participant_service.add_participant(
        db, test_exchange.id, _identity(user=make_user()), Role.CLIENT
    )
    participant_service.deactivate_participant(db, drop.id)

    rows = participant_service.list_participants_for_exchange(db, test_exchange.id)

    assert [r.id for r in rows] == [keep.id]


def test_list_for_identity_matches_either_key(db, make_exchange, make_user, make_contact):
    contact = make_contact()
    user = make_user(contact=contact)
    by_user = make_exchange()
    by_contact = make_exchange()
    unrelated = make_exchange()

    participant_service.add_participant(db, by_user.id, _identity(user=user), Role.CLIENT)
    participant_service.add_participant(db, by_contact.id, _identity(contact=contact), Role.CLIENT)
    participant_service.add_participant(db, unrelated.id, _identity(user=make_user()), Role.CLIENT)

    rows = participant_service.list_participants_for_identity(
        db, _identity(user=user, contact=contact)
    )

    assert {r.exchange_id for r in rows} == {by_user.id, by_contact.id}


def test_update_permissions(db, test_exchange, make_user):
    participant = participant_service.add_participant(
        db, test_exchange.id, _identity(user=make_user()), Role.THIRD_PARTY
    )

    participant_service.update_participant_permissions(
        db, participant.id, {"can_upload_documents": True}
    )

    assert participant.permissions["can_upload_documents"] is True
    assert participant.permissions["can_view_overview"] is True
    events = audit_service.list_events_for_target(db, "participant", participant.id)
    [update] = [e for e in events if e.event_type == AuditEventType.PARTICIPANT_PERMISSIONS_UPDATED.value]
    assert update.details["changed"] == ["can_upload_documents"]


def test_update_permissions_on_inactive_row(db, test_exchange, make_user):
    participant = participant_service.add_participant(
        db, test_exchange.id, _identity(user=make_user()), Role.CLIENT
    )
    participant_service.deactivate_participant(db, participant.id)

    with pytest.raises(InvalidStateError):
        participant_service.update_participant_permissions(db, participant.id, None)


def test_migrate_stored_permissions_is_idempotent(db, test_exchange, make_user):
    legacy = ExchangeParticipant(
        exchange_id=test_exchange.id,
        user_id=make_user().id,
        role="third_party",
        permissions=["read", "upload"],
        is_active=True,
    )
    empty = ExchangeParticipant(
        exchange_id=test_exchange.id,
        user_id=make_user().id,
        role="client",
        permissions=None,
        is_active=True,
    )
    db.add_all([legacy, empty])
    db.flush()

    first = participant_service.migrate_stored_permissions(db)
    second = participant_service.migrate_stored_permissions(db)

    assert first["updated"] == 2
    assert second["updated"] == 0
    assert second["skipped"] == second["checked"]
    assert legacy.permissions["can_upload_documents"] is True
    assert empty.permissions == get_role_template("client")
