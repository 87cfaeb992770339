"""CLI tools for exchange access administration."""

import logging
from uuid import UUID

import click
from pydantic import ValidationError

from exchange_access.core.config import settings
from exchange_access.db.enums import Role
from exchange_access.db.session import SessionLocal
from exchange_access.schemas.identity import Principal
from exchange_access.schemas.invitation import InvitationCreate, InvitationRead


@click.group()
def cli():
    """Exchange access CLI tools."""
    logging.basicConfig(level=settings.LOG_LEVEL)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report what would change without applying")
@click.option("--user-id", type=click.UUID, default=None, help="Reconcile a single user")
def reconcile(dry_run: bool, user_id: UUID | None):
    """
    Link users to contacts and backfill participant rows.

    Safe to run repeatedly. Recommended: run nightly via cron, and after bulk
    contact imports.

    Example:
        exchange-access reconcile
        exchange-access reconcile --user-id 5f0c... --dry-run
    """
    from exchange_access.services import invitation_service, reconciliation_service

    db = SessionLocal()
    try:
        if dry_run:
            click.echo("🔍 DRY RUN - no changes will be made")

        # Lapsed invitations lose their grant before anyone can be bound to it
        expired = invitation_service.expire_invitations(db)
        if expired:
            click.echo(f"✓ {'Would expire' if dry_run else 'Expired'} {expired} lapsed invitation(s)")
        if user_id:
            report = reconciliation_service.reconcile_user(db, user_id)
        else:
            report = reconciliation_service.reconcile(db, commit=not dry_run)

        if dry_run:
            db.rollback()
        else:
            db.commit()

        verb = "Would link" if dry_run else "Linked"
        click.echo(f"✓ {verb} {report.users_linked} user(s) to contacts")
        click.echo(f"✓ {verb} {report.participants_linked} participant row(s)")
        for orphan in report.orphans:
            click.echo(f"  orphan {orphan.row_type} {orphan.row_id}: {orphan.reason}")
        for row_id, reason in report.failures:
            click.echo(f"❌ {row_id}: {reason}")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--dry-run", is_flag=True, help="Preview changes without applying")
def migrate_permissions(dry_run: bool):
    """
    Rewrite stored participant permissions into the capability object form.

    Legacy token arrays and partial objects are normalized against the row's
    role. Rows already in canonical form are skipped.

    Example:
        exchange-access migrate-permissions --dry-run
    """
    from exchange_access.services import participant_service

    db = SessionLocal()
    try:
        if dry_run:
            click.echo("🔍 DRY RUN - no changes will be made")
        stats = participant_service.migrate_stored_permissions(db)
        if dry_run:
            db.rollback()
        else:
            db.commit()

        click.echo(f"Checked {stats['checked']} participant row(s)")
        verb = "Would update" if dry_run else "Updated"
        click.echo(f"✓ {verb} {stats['updated']}, skipped {stats['skipped']}")
        if stats["errors"]:
            click.echo(f"❌ {stats['errors']} row(s) failed, see logs")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
def expire_invitations():
    """Mark pending invitations past their expiry as expired."""
    from exchange_access.services import invitation_service

    db = SessionLocal()
    try:
        count = invitation_service.expire_invitations(db)
        db.commit()
        click.echo(f"✓ Expired {count} invitation(s)")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--user-id", type=click.UUID, required=True, help="User to inspect")
def show_access(user_id: UUID):
    """
    Print every exchange a user can see and the capabilities granted on it.

    Example:
        exchange-access show-access --user-id 5f0c...
    """
    from exchange_access.services import identity_service, visibility_service
    from exchange_access.services.capability_service import granted_keys

    db = SessionLocal()
    try:
        identity = identity_service.resolve_identity(db, Principal(user_id=user_id))
        click.echo(f"Role: {identity.role.value}")
        click.echo(f"Contact: {identity.contact_id or '-'}")
        if identity.contact_hint:
            click.echo(f"  unlinked contact match: {identity.contact_hint} (run reconcile)")

        visible = visibility_service.get_visible_exchanges(db, identity)
        if not visible:
            click.echo("No visible exchanges")
            return
        for exchange_id in sorted(visible, key=str):
            click.echo(f"✓ {exchange_id}: {', '.join(granted_keys(visible[exchange_id]))}")
    except Exception as e:
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--agency-contact-id", type=click.UUID, required=True, help="Agency contact")
@click.option("--third-party-contact-id", type=click.UUID, required=True, help="Third-party contact")
@click.option("--no-performance", is_flag=True, help="Hide performance data from the agency")
@click.option("--score", type=int, default=None, help="Initial performance score")
def assign_third_party(
    agency_contact_id: UUID,
    third_party_contact_id: UUID,
    no_performance: bool,
    score: int | None,
):
    """Assign a third party to an agency."""
    from exchange_access.services import delegation_service

    db = SessionLocal()
    try:
        assignment = delegation_service.assign_third_party(
            db,
            agency_contact_id,
            third_party_contact_id,
            can_view_performance=not no_performance,
            performance_score=score,
        )
        db.commit()
        click.echo(f"✓ Created assignment {assignment.id}")
        click.echo(f"  Performance visible: {assignment.can_view_performance}")
        click.echo(f"  Score: {assignment.performance_score}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--exchange-id", type=click.UUID, required=True, help="Exchange to invite to")
@click.option("--email", required=True, help="Invitee email address")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role if r is not Role.ADMIN]),
    required=True,
    help="Participant role",
)
@click.option("--expires-days", type=int, default=None, help="Days until expiry")
def invite(exchange_id: UUID, email: str, role: str, expires_days: int | None):
    """
    Invite an email to an exchange.

    The token is printed once; deliver it to the invitee out of band.
    """
    from exchange_access.services import invitation_service

    try:
        data = InvitationCreate(email=email, role=role, expires_in_days=expires_days)
    except ValidationError as e:
        click.echo(f"❌ Invalid invitation: {e.errors()[0]['msg']}")
        return

    db = SessionLocal()
    try:
        invitation = invitation_service.create_invitation(db, exchange_id, data)
        db.commit()
        read = InvitationRead.model_validate(invitation)
        click.echo(f"✓ Invitation {read.id} for {read.email} ({read.role.value}): {read.status.value}")
        click.echo(f"  Token: {invitation.token}")
        click.echo(f"  Expires: {read.expires_at}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--token", required=True, help="Invitation token")
def cancel_invitation(token: str):
    """Cancel a pending invitation."""
    from exchange_access.services import invitation_service

    db = SessionLocal()
    try:
        invitation = invitation_service.cancel_invitation(db, token)
        db.commit()
        click.echo(f"✓ Cancelled invitation {invitation.id}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--exchange-id", type=click.UUID, required=True, help="Exchange to inspect")
def list_invitations(exchange_id: UUID):
    """List an exchange's invitations with their effective status."""
    from exchange_access.services import invitation_service

    db = SessionLocal()
    try:
        invitations = invitation_service.list_invitations(db, exchange_id)
        if not invitations:
            click.echo("No invitations")
        for invitation in invitations:
            status = invitation_service.effective_status(invitation)
            click.echo(f"  {invitation.email} ({invitation.role}): {status.value}")
    finally:
        db.close()


@cli.command()
def list_capabilities():
    """Print the capability registry and role templates."""
    from exchange_access.core.capabilities import ROLE_DEFAULTS, get_capabilities_by_category

    for category, capabilities in get_capabilities_by_category().items():
        click.echo(f"{category.value}:")
        for cap in capabilities:
            click.echo(f"  {cap.key:<26} {cap.label}")
    click.echo()
    for role, granted in ROLE_DEFAULTS.items():
        click.echo(f"{role}: {len(granted)} capabilities")


if __name__ == "__main__":
    cli()
