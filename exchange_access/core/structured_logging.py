"""Structured logging helpers (PII-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    contact_id: UUID | str | None = None,
    role: str | None = None,
    exchange_id: UUID | str | None = None,
    participant_id: UUID | str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict (ids and role only, never emails)."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if contact_id:
        context["contact_id"] = str(contact_id)
    if role:
        context["role"] = role
    if exchange_id:
        context["exchange_id"] = str(exchange_id)
    if participant_id:
        context["participant_id"] = str(participant_id)
    return context
