"""Invitation-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from exchange_access.db.enums import InvitationStatus, Role


class InvitationCreate(BaseModel):
    """
    Input for inviting someone to an exchange.

    Validates:
    - Email format
    - Role is valid enum value
    - Email is normalized to lowercase
    """
    email: EmailStr
    role: Role
    expires_in_days: int | None = Field(default=None, ge=1)  # None = configured default

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower()


class InvitationRead(BaseModel):
    """Invitation without its token."""
    id: UUID
    email: str
    role: Role
    exchange_id: UUID
    status: InvitationStatus
    expires_at: datetime | None
    accepted_at: datetime | None

    model_config = {"from_attributes": True}
