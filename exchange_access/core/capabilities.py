"""Capability registry with role templates and legacy token mapping.

Every exchange-level capability is defined here with a label, description and
category. A capability set is always total over CAPABILITY_KEYS.

Role templates:
- admin: everything
- coordinator / client: broad, no deletes
- third_party / agency: view overview only (agency also sees performance)
Unknown roles fall back to the third_party template.
"""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class CapabilityDef:
    """Capability definition with metadata."""
    key: str
    label: str
    description: str
    category: str


class CapabilityCategory(str, Enum):
    """Capability categories for grouping."""
    EXCHANGE = "Exchange"
    MESSAGES = "Messages"
    TASKS = "Tasks"
    DOCUMENTS = "Documents"
    PARTICIPANTS = "Participants"
    FINANCIAL = "Financial"
    TIMELINE = "Timeline"
    REPORTS = "Reports"


# =============================================================================
# Capability Registry
# =============================================================================

CAPABILITY_REGISTRY: dict[str, CapabilityDef] = {
    # Exchange
    "can_view_overview": CapabilityDef(
        "can_view_overview", "View Overview",
        "See the exchange summary", CapabilityCategory.EXCHANGE
    ),
    "can_edit": CapabilityDef(
        "can_edit", "Edit Exchange",
        "Modify exchange details", CapabilityCategory.EXCHANGE
    ),
    "can_delete": CapabilityDef(
        "can_delete", "Delete Exchange",
        "Delete exchange records", CapabilityCategory.EXCHANGE
    ),

    # Messages
    "can_view_messages": CapabilityDef(
        "can_view_messages", "View Messages",
        "Read the exchange chat", CapabilityCategory.MESSAGES
    ),
    "can_send_messages": CapabilityDef(
        "can_send_messages", "Send Messages",
        "Post to the exchange chat", CapabilityCategory.MESSAGES
    ),

    # Tasks
    "can_view_tasks": CapabilityDef(
        "can_view_tasks", "View Tasks",
        "See exchange tasks", CapabilityCategory.TASKS
    ),
    "can_create_tasks": CapabilityDef(
        "can_create_tasks", "Create Tasks",
        "Create exchange tasks", CapabilityCategory.TASKS
    ),
    "can_edit_tasks": CapabilityDef(
        "can_edit_tasks", "Edit Tasks",
        "Modify exchange tasks", CapabilityCategory.TASKS
    ),
    "can_assign_tasks": CapabilityDef(
        "can_assign_tasks", "Assign Tasks",
        "Assign tasks to participants", CapabilityCategory.TASKS
    ),

    # Documents
    "can_view_documents": CapabilityDef(
        "can_view_documents", "View Documents",
        "See exchange documents", CapabilityCategory.DOCUMENTS
    ),
    "can_upload_documents": CapabilityDef(
        "can_upload_documents", "Upload Documents",
        "Upload documents to the exchange", CapabilityCategory.DOCUMENTS
    ),
    "can_edit_documents": CapabilityDef(
        "can_edit_documents", "Edit Documents",
        "Rename and replace documents", CapabilityCategory.DOCUMENTS
    ),
    "can_delete_documents": CapabilityDef(
        "can_delete_documents", "Delete Documents",
        "Remove documents", CapabilityCategory.DOCUMENTS
    ),

    # Participants
    "can_view_participants": CapabilityDef(
        "can_view_participants", "View Participants",
        "See who is on the exchange", CapabilityCategory.PARTICIPANTS
    ),
    "can_add_participants": CapabilityDef(
        "can_add_participants", "Add Participants",
        "Invite people to the exchange", CapabilityCategory.PARTICIPANTS
    ),
    "can_manage_participants": CapabilityDef(
        "can_manage_participants", "Manage Participants",
        "Change participant roles and permissions", CapabilityCategory.PARTICIPANTS
    ),

    # Financial
    "can_view_financial": CapabilityDef(
        "can_view_financial", "View Financials",
        "See proceeds, values and fees", CapabilityCategory.FINANCIAL
    ),
    "can_edit_financial": CapabilityDef(
        "can_edit_financial", "Edit Financials",
        "Modify financial fields", CapabilityCategory.FINANCIAL
    ),

    # Timeline
    "can_view_timeline": CapabilityDef(
        "can_view_timeline", "View Timeline",
        "See the 45/180 day deadlines", CapabilityCategory.TIMELINE
    ),
    "can_edit_timeline": CapabilityDef(
        "can_edit_timeline", "Edit Timeline",
        "Change exchange milestones", CapabilityCategory.TIMELINE
    ),

    # Reports
    "can_view_reports": CapabilityDef(
        "can_view_reports", "View Reports",
        "Access exchange reports", CapabilityCategory.REPORTS
    ),
    "can_view_performance": CapabilityDef(
        "can_view_performance", "View Performance",
        "See third-party performance metrics", CapabilityCategory.REPORTS
    ),
}

CAPABILITY_KEYS: tuple[str, ...] = tuple(CAPABILITY_REGISTRY.keys())


# =============================================================================
# Role Templates
# =============================================================================

_BROAD_WITHOUT_DELETE = {
    "can_edit",
    "can_add_participants",
    "can_upload_documents",
    "can_send_messages",
    "can_view_overview",
    "can_view_messages",
    "can_view_tasks",
    "can_create_tasks",
    "can_edit_tasks",
    "can_assign_tasks",
    "can_view_documents",
    "can_edit_documents",
    "can_view_participants",
    "can_manage_participants",
    "can_view_financial",
    "can_edit_financial",
    "can_view_timeline",
    "can_edit_timeline",
    "can_view_reports",
}

# Which capabilities each role has by default (everything else is False)
ROLE_DEFAULTS: dict[str, frozenset[str]] = {
    "admin": frozenset(CAPABILITY_KEYS),
    "coordinator": frozenset(_BROAD_WITHOUT_DELETE | {"can_view_performance"}),
    "client": frozenset(_BROAD_WITHOUT_DELETE),
    "third_party": frozenset({"can_view_overview"}),
    "agency": frozenset({"can_view_overview", "can_view_performance"}),
}

FALLBACK_ROLE = "third_party"

# What an agency may ever receive through a third party it is assigned to
DELEGATED_CAPABILITIES = frozenset({"can_view_overview", "can_view_performance"})
PERFORMANCE_CAPABILITY = "can_view_performance"


# =============================================================================
# Legacy Permission Tokens
# =============================================================================

# Permission arrays stored before capability objects existed
LEGACY_TOKEN_MAP: dict[str, tuple[str, ...]] = {
    "read": (
        "can_view_overview",
        "can_view_messages",
        "can_view_tasks",
        "can_view_documents",
        "can_view_participants",
    ),
    "write": ("can_edit", "can_create_tasks", "can_edit_tasks"),
    "delete": ("can_delete", "can_delete_documents", "can_delete_tasks"),
    "comment": ("can_send_messages",),
    "upload_documents": ("can_upload_documents",),
    "upload": ("can_upload_documents",),
    "edit": ("can_edit",),
    "view": ("can_view_overview",),
    "manage": ("can_manage_participants", "can_add_participants"),
    "admin": ("can_edit", "can_delete", "can_add_participants", "can_manage_participants"),
}


# =============================================================================
# Helper Functions
# =============================================================================

def is_valid_capability(key: str) -> bool:
    """Check if capability key exists."""
    return key in CAPABILITY_REGISTRY


def get_role_template(role: str | None) -> dict[str, bool]:
    """Return a fresh, total capability dict for a role."""
    granted = ROLE_DEFAULTS.get(role or "", ROLE_DEFAULTS[FALLBACK_ROLE])
    return {key: key in granted for key in CAPABILITY_KEYS}


def tokens_to_capabilities(token: str) -> tuple[str, ...]:
    """
    Map one stored permission token to capability keys.

    Accepts legacy tokens ("read"), capability keys ("can_view_tasks") and
    bare permission types ("view_tasks"). Unknown tokens map to nothing.
    """
    if token in LEGACY_TOKEN_MAP:
        return tuple(k for k in LEGACY_TOKEN_MAP[token] if k in CAPABILITY_REGISTRY)
    if token in CAPABILITY_REGISTRY:
        return (token,)
    prefixed = f"can_{token}"
    if prefixed in CAPABILITY_REGISTRY:
        return (prefixed,)
    return ()


def get_capabilities_by_category() -> dict[str, list[CapabilityDef]]:
    """Group capabilities by category."""
    result: dict[str, list[CapabilityDef]] = {}
    for cap in CAPABILITY_REGISTRY.values():
        result.setdefault(cap.category, []).append(cap)
    return result
