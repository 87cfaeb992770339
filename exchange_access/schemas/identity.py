"""Identity-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from exchange_access.db.enums import Role


class Principal(BaseModel):
    """
    Authenticated caller as handed over by the auth layer.

    The role here is a claim; the stored User row is authoritative.
    """
    user_id: UUID
    role: Role | None = None
