"""Pydantic schemas for inputs and read models."""

from exchange_access.schemas.identity import Principal
from exchange_access.schemas.invitation import InvitationCreate, InvitationRead
from exchange_access.schemas.participant import ParticipantRead

__all__ = [
    "Principal",
    "InvitationCreate",
    "InvitationRead",
    "ParticipantRead",
]
