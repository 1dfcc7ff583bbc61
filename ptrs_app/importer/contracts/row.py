"""Typed canonical row used between composition, rules, exclusions and staging."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterator, Mapping

from ptrs_app.importer.values import (
    format_date,
    format_money,
    is_blank,
    parse_bool,
    parse_date,
    parse_int,
    parse_money,
)

from .canonical import FieldKind, get_field_names, get_field_spec_map

WARNING_NO_MAPPED_DATA = "No mapped data for this row"

_SPECS = get_field_spec_map()
_FIELD_ORDER = get_field_names()


def coerce_value(field: str, value: Any, *, fmt: str | None = None) -> tuple[Any, bool]:
    """
    Coerce ``value`` to the kind declared for canonical ``field``.

    Returns ``(coerced, ok)``; ``ok`` is False when a non-blank value could not
    be read, in which case ``coerced`` is ``None``.
    """

    spec = _SPECS.get(field)
    if is_blank(value):
        return None, True
    if spec is None:
        return (value if isinstance(value, (bool, int, float)) else str(value).strip()), True

    kind = spec.kind
    if kind is FieldKind.MONEY:
        parsed = parse_money(value)
    elif kind is FieldKind.DATE:
        parsed = parse_date(value, fmt)
    elif kind is FieldKind.INT:
        parsed = parse_int(value)
    elif kind is FieldKind.BOOL:
        parsed = parse_bool(value)
    elif kind is FieldKind.ENUM:
        token = str(value).strip().lower()
        parsed = token if token in spec.choices else None
    else:
        parsed = str(value).strip()
    return parsed, parsed is not None


def _to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format_money(value)
    if isinstance(value, date):
        return format_date(value)
    return value


class CanonicalRow:
    """
    Canonical values keyed by field name plus pipeline bookkeeping.

    Canonical keys are coerced on assignment; keys outside the contract are
    kept as custom fields. ``applied_rules`` lists rule keys in firing order
    and never holds a key twice.
    """

    def __init__(self, row_no: int, values: Mapping[str, Any] | None = None) -> None:
        self.row_no = row_no
        self._values: dict[str, Any] = {name: None for name in _FIELD_ORDER}
        self._custom: dict[str, Any] = {}
        self.invalid: dict[str, str] = {}
        self.applied_rules: list[str] = []
        self.exclude = False
        self.exclusion_codes: list[str] = []
        self.warning: str | None = None
        for key, value in (values or {}).items():
            self[key] = value

    def __getitem__(self, key: str) -> Any:
        if key in self._values:
            return self._values[key]
        return self._custom.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, key: object) -> bool:
        return key in self._values or key in self._custom

    def __iter__(self) -> Iterator[str]:
        yield from self._values
        yield from self._custom

    def get(self, key: str, default: Any = None) -> Any:
        value = self[key]
        return default if value is None else value

    def set(self, key: str, value: Any, *, fmt: str | None = None) -> None:
        coerced, ok = coerce_value(key, value, fmt=fmt)
        if key in self._values:
            self._values[key] = coerced
            if ok:
                self.invalid.pop(key, None)
            else:
                self.invalid[key] = str(value)[:100]
        else:
            self._custom[key] = coerced

    def is_populated(self, key: str) -> bool:
        return self[key] is not None

    def has_any_value(self) -> bool:
        return any(value is not None for value in self._values.values()) or any(
            value is not None for value in self._custom.values()
        )

    @property
    def custom_fields(self) -> dict[str, Any]:
        return dict(self._custom)

    def mark_applied(self, rule_key: str) -> bool:
        """Record ``rule_key`` once; returns False if it had already fired."""

        if rule_key in self.applied_rules:
            return False
        self.applied_rules.append(rule_key)
        return True

    def mark_excluded(self, comment: str | None, *, code: str | None = None) -> None:
        if not self.exclude:
            self.exclude = True
            if comment and self["exclude_comment"] is None:
                self["exclude_comment"] = comment
        if code and code not in self.exclusion_codes:
            self.exclusion_codes.append(code)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe payload persisted as ``StagedRow.data``."""

        payload: dict[str, Any] = {key: _to_json(value) for key, value in self._values.items()}
        payload.update({key: _to_json(value) for key, value in self._custom.items()})
        payload["exclude"] = self.exclude
        payload["_appliedRules"] = list(self.applied_rules)
        if self.warning:
            payload["_warning"] = self.warning
        if self.invalid:
            payload["_invalid"] = dict(self.invalid)
        return payload

    @classmethod
    def from_payload(cls, row_no: int, payload: Mapping[str, Any]) -> "CanonicalRow":
        row = cls(row_no)
        for key, value in payload.items():
            if key in ("exclude", "_appliedRules", "_warning", "_invalid"):
                continue
            row[key] = value
        row.exclude = bool(payload.get("exclude"))
        row.applied_rules = list(payload.get("_appliedRules") or [])
        row.warning = payload.get("_warning")
        row.invalid.update(payload.get("_invalid") or {})
        return row
