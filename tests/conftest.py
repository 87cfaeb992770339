"""
Test configuration and fixtures.

Provides:
- Database session with savepoint (rollback after each test)
- Factories for contacts, users and exchanges
"""
import os
import uuid
from typing import Generator

import pytest
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

# In-memory SQLite unless a database is configured explicitly
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from exchange_access.db.base import Base
from exchange_access.db.enums import Role
from exchange_access.db.models import Contact, Exchange, User
from exchange_access.db.session import engine


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    """Create all tables once per test session."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def connection() -> Generator[Connection, None, None]:
    """Connection holding an outer transaction that is rolled back after the test."""
    conn = engine.connect()
    transaction = conn.begin()
    yield conn
    transaction.rollback()
    conn.close()


def make_session(connection: Connection) -> Session:
    """
    Session joined to the test connection.

    commit() only releases a SAVEPOINT, so app code can commit without
    ending the test transaction.
    """
    return Session(
        bind=connection,
        join_transaction_mode="create_savepoint",
        autoflush=False,
    )


@pytest.fixture(scope="function")
def db(connection: Connection) -> Generator[Session, None, None]:
    session = make_session(connection)
    yield session
    session.close()


@pytest.fixture(scope="function")
def session_factory(connection: Connection):
    """Stand-in for SessionLocal that joins the test transaction."""
    return lambda: make_session(connection)


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture(scope="function")
def make_contact(db: Session):
    """Create a contact. Email defaults to a unique address."""

    def _make(email: str | None = None, contact_type: str | None = None) -> Contact:
        contact = Contact(
            id=uuid.uuid4(),
            email=email if email is not None else f"contact-{uuid.uuid4().hex[:8]}@test.com",
            display_name="Test Contact",
            contact_type=contact_type,
        )
        db.add(contact)
        db.flush()
        return contact

    return _make


@pytest.fixture(scope="function")
def make_user(db: Session):
    """Create a user, optionally already linked to a contact."""

    def _make(
        role: Role = Role.CLIENT,
        email: str | None = None,
        contact: Contact | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            display_name="Test User",
            role=role.value,
            contact_id=contact.id if contact else None,
            is_active=is_active,
        )
        db.add(user)
        db.flush()
        return user

    return _make


@pytest.fixture(scope="function")
def make_exchange(db: Session):
    """Create an exchange with optional primary client and coordinator."""

    def _make(client_id: uuid.UUID | None = None, coordinator_id: uuid.UUID | None = None) -> Exchange:
        exchange = Exchange(
            id=uuid.uuid4(),
            name=f"Exchange {uuid.uuid4().hex[:6]}",
            client_id=client_id,
            coordinator_id=coordinator_id,
        )
        db.add(exchange)
        db.flush()
        return exchange

    return _make


@pytest.fixture(scope="function")
def test_exchange(make_exchange) -> Exchange:
    return make_exchange()
