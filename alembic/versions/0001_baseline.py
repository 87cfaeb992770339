"""Baseline migration - identities, exchanges, participants and delegation

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Creates identity (users, contacts), exchange, participant, agency assignment,
invitation and audit tables. Participant uniqueness is enforced with partial
unique indexes on active rows.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create access engine tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Contacts
    # ==========================================================================
    op.execute('''
        CREATE TABLE contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            first_name VARCHAR(100),
            last_name VARCHAR(100),
            display_name VARCHAR(255),
            email VARCHAR(255),
            contact_type VARCHAR(50),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_contacts_email ON contacts (email)')
    op.execute('CREATE INDEX ix_contacts_email_lower ON contacts (lower(email))')

    # ==========================================================================
    # Users
    # ==========================================================================
    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) UNIQUE NOT NULL,
            display_name VARCHAR(255),
            role VARCHAR(32) NOT NULL,
            contact_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_users_contact_id ON users (contact_id)')

    # ==========================================================================
    # Exchanges
    # ==========================================================================
    op.execute('''
        CREATE TABLE exchanges (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255),
            client_id UUID,
            coordinator_id UUID REFERENCES users(id) ON DELETE SET NULL,
            status VARCHAR(50) NOT NULL DEFAULT 'open',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_exchanges_client_id ON exchanges (client_id)')
    op.execute('CREATE INDEX ix_exchanges_coordinator_id ON exchanges (coordinator_id)')

    # ==========================================================================
    # Exchange participants
    # ==========================================================================
    op.execute('''
        CREATE TABLE exchange_participants (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            exchange_id UUID NOT NULL REFERENCES exchanges(id) ON DELETE CASCADE,
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            contact_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            role VARCHAR(32) NOT NULL,
            permissions JSONB,
            is_active BOOLEAN NOT NULL DEFAULT true,
            assigned_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_exchange_participants_identity_present
                CHECK (user_id IS NOT NULL OR contact_id IS NOT NULL)
        )
    ''')
    op.execute('''
        CREATE UNIQUE INDEX uq_exchange_participants_active_user
        ON exchange_participants (exchange_id, user_id)
        WHERE is_active AND user_id IS NOT NULL
    ''')
    op.execute('''
        CREATE UNIQUE INDEX uq_exchange_participants_active_contact
        ON exchange_participants (exchange_id, contact_id)
        WHERE is_active AND contact_id IS NOT NULL
    ''')
    op.execute('CREATE INDEX ix_exchange_participants_user_id ON exchange_participants (user_id)')
    op.execute('CREATE INDEX ix_exchange_participants_contact_id ON exchange_participants (contact_id)')

    # ==========================================================================
    # Agency -> third party assignments
    # ==========================================================================
    op.execute('''
        CREATE TABLE agency_third_party_assignments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            agency_contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            third_party_contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            is_active BOOLEAN NOT NULL DEFAULT true,
            can_view_performance BOOLEAN NOT NULL DEFAULT true,
            performance_score INTEGER,
            assigned_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_agency_third_party_assignments_distinct
                CHECK (agency_contact_id <> third_party_contact_id)
        )
    ''')
    op.execute('''
        CREATE UNIQUE INDEX uq_agency_third_party_assignments_active_pair
        ON agency_third_party_assignments (agency_contact_id, third_party_contact_id)
        WHERE is_active
    ''')
    op.execute('''
        CREATE INDEX ix_agency_third_party_assignments_agency
        ON agency_third_party_assignments (agency_contact_id)
    ''')

    # ==========================================================================
    # Invitations
    # ==========================================================================
    op.execute('''
        CREATE TABLE invitations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            token VARCHAR(128) UNIQUE NOT NULL,
            email VARCHAR(255) NOT NULL,
            role VARCHAR(32) NOT NULL,
            exchange_id UUID NOT NULL REFERENCES exchanges(id) ON DELETE CASCADE,
            contact_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            invited_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            expires_at TIMESTAMPTZ,
            accepted_at TIMESTAMPTZ,
            accepted_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            cancelled_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_invitations_exchange_email ON invitations (exchange_id, email)')

    # ==========================================================================
    # Audit log
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_type VARCHAR(64) NOT NULL,
            actor_user_id UUID,
            target_type VARCHAR(50),
            target_id UUID,
            details JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX ix_audit_logs_target ON audit_logs (target_type, target_id)')


def downgrade() -> None:
    """Drop access engine tables."""
    op.execute('DROP TABLE IF EXISTS audit_logs')
    op.execute('DROP TABLE IF EXISTS invitations')
    op.execute('DROP TABLE IF EXISTS agency_third_party_assignments')
    op.execute('DROP TABLE IF EXISTS exchange_participants')
    op.execute('DROP TABLE IF EXISTS exchanges')
    op.execute('DROP TABLE IF EXISTS users')
    op.execute('DROP TABLE IF EXISTS contacts')
