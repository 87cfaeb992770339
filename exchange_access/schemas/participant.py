"""Participant read model with normalized capabilities attached."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class ParticipantRead(BaseModel):
    """Active participant row as returned to callers."""
    id: UUID
    exchange_id: UUID
    user_id: UUID | None
    contact_id: UUID | None
    role: str
    permissions: dict[str, bool]
    is_active: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
