"""Canonical import contract helpers for the contact importer."""

from __future__ import annotations

from .contact import (
    CONTACT_ATTRIBUTES,
    CONTACT_FIELDS,
    NAME_ATTRIBUTES,
    PHONE_ATTRIBUTES,
    FieldSpec,
    MappingSuggestion,
    get_contact_alias_map,
    get_contact_field_specs,
    missing_required_attributes,
    normalize_header,
    resolve_target_attribute,
    suggest_field_mapping,
)

__all__ = [
    "FieldSpec",
    "MappingSuggestion",
    "CONTACT_FIELDS",
    "CONTACT_ATTRIBUTES",
    "NAME_ATTRIBUTES",
    "PHONE_ATTRIBUTES",
    "get_contact_field_specs",
    "get_contact_alias_map",
    "missing_required_attributes",
    "normalize_header",
    "resolve_target_attribute",
    "suggest_field_mapping",
]
