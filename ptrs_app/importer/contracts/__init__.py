"""Canonical payment-times contract helpers."""

from __future__ import annotations

from .canonical import (
    CANONICAL_FIELDS,
    CanonicalField,
    FieldKind,
    FieldSpec,
    canonical_field_for,
    fields_of_kind,
    get_field_names,
    get_field_spec_map,
    get_field_specs,
    get_metrics_required_fields,
    get_report_required_fields,
    normalize_header,
    resolve_target,
)
from .row import WARNING_NO_MAPPED_DATA, CanonicalRow, coerce_value

__all__ = [
    "CANONICAL_FIELDS",
    "CanonicalField",
    "CanonicalRow",
    "FieldKind",
    "FieldSpec",
    "WARNING_NO_MAPPED_DATA",
    "canonical_field_for",
    "coerce_value",
    "fields_of_kind",
    "get_field_names",
    "get_field_spec_map",
    "get_field_specs",
    "get_metrics_required_fields",
    "get_report_required_fields",
    "normalize_header",
    "resolve_target",
]
