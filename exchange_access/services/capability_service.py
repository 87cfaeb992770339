"""Capability normalization: any stored permission shape -> one total capability set.

Stored permissions have changed format over time:
- absent (None): role template applies verbatim
- array of tokens: legacy ("read", "comment") or capability keys ("can_edit")
- object: partial or complete capability map

normalize_permissions() is pure and idempotent, so it runs at read time and
stored data never needs an eager migration.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from exchange_access.core.capabilities import (
    CAPABILITY_KEYS,
    DELEGATED_CAPABILITIES,
    PERFORMANCE_CAPABILITY,
    get_role_template,
    tokens_to_capabilities,
)

logger = logging.getLogger(__name__)

CapabilitySet = dict[str, bool]

_TRUE_STRINGS = {"true", "1", "yes"}


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def normalize_permissions(permissions: Any, role: str | None) -> CapabilitySet:
    """
    Convert stored permissions into a complete capability set for a role.

    Rules, in order:
    1. None -> role template
    2. list/tuple of tokens -> role template, each recognised token sets its
       mapped keys True (tokens never unset a template key)
    3. mapping -> stored values win, missing keys come from the role template,
       unknown keys are dropped
    """
    capabilities = get_role_template(role)

    if permissions is None:
        return capabilities

    if isinstance(permissions, (list, tuple)):
        for token in permissions:
            if not isinstance(token, str):
                continue
            keys = tokens_to_capabilities(token.strip())
            if not keys:
                logger.debug("Ignoring unknown permission token %r", token)
            for key in keys:
                capabilities[key] = True
        return capabilities

    if isinstance(permissions, Mapping):
        for key in CAPABILITY_KEYS:
            if key in permissions:
                capabilities[key] = _coerce_flag(permissions[key])
        return capabilities

    logger.warning(
        "Unrecognised permissions shape %s, using %s template",
        type(permissions).__name__,
        role,
    )
    return capabilities


def is_normalized(permissions: Any) -> bool:
    """True when permissions is already a total capability object."""
    return (
        isinstance(permissions, Mapping)
        and set(permissions.keys()) == set(CAPABILITY_KEYS)
        and all(isinstance(v, bool) for v in permissions.values())
    )


def merge_capabilities(capability_sets: Iterable[CapabilitySet]) -> CapabilitySet:
    """Per-key logical OR. Never makes anyone less capable than any single input."""
    merged = {key: False for key in CAPABILITY_KEYS}
    for capabilities in capability_sets:
        for key in CAPABILITY_KEYS:
            if capabilities.get(key):
                merged[key] = True
    return merged


def delegated_capabilities(can_view_performance: bool) -> CapabilitySet:
    """
    Capabilities an agency receives through an assigned third party.

    Bounded by the agency template and the delegated ceiling; the third
    party's own capabilities are never consulted.
    """
    base = get_role_template("agency")
    capabilities = {
        key: base[key] and key in DELEGATED_CAPABILITIES for key in CAPABILITY_KEYS
    }
    capabilities[PERFORMANCE_CAPABILITY] = (
        capabilities[PERFORMANCE_CAPABILITY] and can_view_performance
    )
    return capabilities


def granted_keys(capabilities: CapabilitySet) -> list[str]:
    """Keys set to True, in registry order."""
    return [key for key in CAPABILITY_KEYS if capabilities.get(key)]
