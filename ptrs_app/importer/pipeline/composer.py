"""Compose canonical rows from raw rows, joined datasets and the column map."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable, Mapping, Sequence

from ptrs_app.importer.contracts import WARNING_NO_MAPPED_DATA, CanonicalRow, canonical_field_for
from ptrs_app.importer.mapping import MAIN_ROLE, ColumnMapSpec, JoinCondition
from ptrs_app.importer.values import (
    format_money,
    is_blank,
    parse_bool,
    parse_date,
    parse_int,
    parse_money,
    parse_number,
    parse_term_days,
    payment_delay_days,
    resolve_reference_date,
)
from ptrs_app.models.importer.schema import FieldMapEntry

from .column_map import ColumnMapResolver

_WHITESPACE = re.compile(r"\s+")
_TRAILING_ZERO = re.compile(r"\.0+$")

SURROGATE_PREFIX = "sys:"
_SURROGATE_FIELDS = (
    "payee_entity_abn",
    "payer_entity_abn",
    "payment_date",
    "payment_amount",
    "supply_date",
    "notice_for_payment_issue_date",
    "invoice_issue_date",
    "invoice_receipt_date",
)
_TERM_SOURCES = (
    ("payment_term", "parsed_payment_term"),
    ("contract_po_payment_terms", "contract_po"),
    ("notice_for_payment_terms", "notice"),
)


def normalize_join_key(value: Any) -> str | None:
    """Trim, lower-case and collapse whitespace; ``"1001.0"`` joins ``"1001"``."""

    if is_blank(value):
        return None
    token = _WHITESPACE.sub(" ", str(value).strip().lower())
    return _TRAILING_ZERO.sub("", token)


class JoinIndex:
    """Lookup of supporting-dataset rows for one join condition; first row per key wins."""

    def __init__(self, condition: JoinCondition, rows: Iterable[Mapping[str, Any]]) -> None:
        self.condition = condition
        self._rows: dict[str, Mapping[str, Any]] = {}
        for data in rows:
            key = normalize_join_key(data.get(condition.other_column))
            if key is not None and key not in self._rows:
                self._rows[key] = data

    def __len__(self) -> int:
        return len(self._rows)

    def lookup(self, main_data: Mapping[str, Any]) -> Mapping[str, Any] | None:
        key = normalize_join_key(main_data.get(self.condition.main_column))
        if key is None:
            return None
        return self._rows.get(key)


def build_join_indexes(
    joins: Sequence[JoinCondition], rows_by_role: Mapping[str, Iterable[Mapping[str, Any]]]
) -> list[JoinIndex]:
    indexes = []
    for condition in joins:
        rows = rows_by_role.get(condition.other_role)
        if rows is None:
            continue
        indexes.append(JoinIndex(condition, list(rows)))
    return indexes


def _coerce_custom(value: Any, type_name: str | None, fmt: str | None) -> Any:
    if type_name == "money":
        return format_money(parse_money(value))
    if type_name == "number":
        number = parse_number(value)
        return format(number, "f") if number is not None else None
    if type_name == "int":
        return parse_int(value)
    if type_name == "date":
        parsed = parse_date(value, fmt)
        return parsed.isoformat() if parsed else None
    if type_name == "bool":
        return parse_bool(value)
    return str(value).strip()


def _apply_transform(value: Any, transform: str | None, config: Mapping[str, Any] | None) -> Any:
    if is_blank(value) or not transform:
        return value
    if transform == "trim":
        return str(value).strip()
    if transform == "abs":
        amount = parse_money(value)
        return abs(amount) if amount is not None else None
    if transform == "date":
        return parse_date(value, (config or {}).get("format"))
    return value


def surrogate_reference(row: CanonicalRow) -> str:
    """Deterministic ``sys:`` reference from the row's identifying fields."""

    parts = []
    for name in _SURROGATE_FIELDS:
        value = row[name]
        if name == "payment_amount":
            value = format_money(value)
        elif value is not None:
            value = str(value)
        parts.append((value or "").strip())
    parts.append(str(row.row_no))
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"{SURROGATE_PREFIX}{digest[:16]}"


def canonicalize_row(row: CanonicalRow) -> CanonicalRow:
    """Fill defaults and derived fields on a composed row in place."""

    if row["trade_credit_payment"] is None:
        row["trade_credit_payment"] = True
    if row["excluded_trade_credit_payment"] is None:
        row["excluded_trade_credit_payment"] = False

    if row["payment_term"] is None and row["invoice_payment_terms"] is not None:
        row["payment_term"] = row["invoice_payment_terms"]

    if row["payment_term_days"] is not None:
        if row["payment_term_source"] is None:
            row["payment_term_source"] = "explicit_days"
    else:
        for field, source in _TERM_SOURCES:
            days = parse_term_days(row[field])
            if days is not None:
                row["payment_term_days"] = days
                row["payment_term_source"] = source
                break

    if row["payment_time_reference_date"] is None:
        reference, kind = resolve_reference_date(
            invoice_issue_date=row["invoice_issue_date"],
            invoice_receipt_date=row["invoice_receipt_date"],
            notice_for_payment_issue_date=row["notice_for_payment_issue_date"],
            supply_date=row["supply_date"],
        )
        if reference is not None:
            row["payment_time_reference_date"] = reference
            row["payment_time_reference_kind"] = kind

    if row["payment_time_days"] is None:
        delay = payment_delay_days(row["payment_date"], row["payment_time_reference_date"])
        if delay is not None:
            row["payment_time_days"] = delay

    if row["invoice_reference_number"] is None:
        row["invoice_reference_number"] = surrogate_reference(row)
    return row


class RowComposer:
    """
    Build a :class:`CanonicalRow` for each raw row.

    The source record is the main row's data. For every join that matches, the
    joined row's columns are added as ``"<role>.<column>"`` and, when the main
    row does not carry that header, under the bare header too. Columns listed
    in a join's ``join_only_fields`` always come from the joined row.
    """

    def __init__(
        self,
        spec: ColumnMapSpec,
        *,
        field_map: Sequence[FieldMapEntry] = (),
        join_indexes: Sequence[JoinIndex] = (),
    ) -> None:
        self.spec = spec
        self.resolver = ColumnMapResolver(spec)
        self.field_map = list(field_map)
        self.join_indexes = list(join_indexes)

    def source_record(self, data: Mapping[str, Any]) -> dict[str, Any]:
        source = dict(data)
        for index in self.join_indexes:
            joined = index.lookup(data)
            if joined is None:
                continue
            role = index.condition.other_role
            join_only = set(index.condition.join_only_fields)
            for header, value in joined.items():
                source.setdefault(f"{role}.{header}", value)
                if header in join_only:
                    source[header] = value
                elif header not in data:
                    source.setdefault(header, value)
        return source

    def compose(self, row_no: int, data: Mapping[str, Any]) -> CanonicalRow:
        source = self.source_record(data)
        row = CanonicalRow(row_no)

        for field, resolution in self.resolver.resolve_all(source).items():
            if not resolution.resolved:
                continue
            entry = resolution.entry
            fmt = entry.format if entry else None
            if canonical_field_for(field) is None:
                row.set(field, _coerce_custom(resolution.value, entry.type if entry else None, fmt))
            else:
                row.set(field, resolution.value, fmt=fmt)

        for mapping in self.field_map:
            field = mapping.canonical_field
            if row.is_populated(field) or not mapping.source_column:
                continue
            if (mapping.source_role or MAIN_ROLE) == MAIN_ROLE:
                value = source.get(mapping.source_column)
            else:
                value = source.get(f"{mapping.source_role}.{mapping.source_column}")
            value = _apply_transform(value, mapping.transform_type, mapping.transform_config)
            if not is_blank(value):
                row.set(field, value)

        has_data = row.has_any_value()
        canonicalize_row(row)
        if not has_data:
            row.warning = WARNING_NO_MAPPED_DATA
        return row


def compose_row(
    row_no: int,
    data: Mapping[str, Any],
    spec: ColumnMapSpec,
    *,
    field_map: Sequence[FieldMapEntry] = (),
    join_indexes: Sequence[JoinIndex] = (),
) -> CanonicalRow:
    """Convenience wrapper composing a single row."""

    return RowComposer(spec, field_map=field_map, join_indexes=join_indexes).compose(row_no, data)
