"""Column map resolution and persistence.

Resolution precedence for a target field is fixed:

1. explicit mapping (source header -> field)
2. fallback headers, in declared order
3. canonical identity (a header that *is* the field name, any casing)
4. static default
5. ``None``

An empty cell at any level falls through to the next level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from flask import current_app, has_app_context

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import canonical_field_for, get_field_names, normalize_header
from ptrs_app.importer.mapping import (
    MAIN_ROLE,
    ColumnMapSpec,
    MappingEntry,
    parse_custom_fields,
    parse_defaults,
    parse_fallbacks,
    parse_joins,
    parse_mappings,
    parse_row_rules,
    spec_from_payload,
)
from ptrs_app.importer.values import is_blank
from ptrs_app.models.importer.schema import ColumnMap, FieldMapEntry, ImportRunStatus
from ptrs_app.tenancy import TenantTransaction

from .rules import parse_rules
from .run_service import ImportRunService

FIELD_MAP_TRANSFORMS = ("abs", "trim", "date")


@dataclass(frozen=True)
class Resolution:
    value: Any
    origin: str
    source: str | None = None
    entry: MappingEntry | None = None

    @property
    def resolved(self) -> bool:
        return self.origin != "none"


_UNRESOLVED = Resolution(value=None, origin="none")


class ColumnMapResolver:
    """Resolve canonical and custom field values from a source record."""

    def __init__(self, spec: ColumnMapSpec) -> None:
        self.spec = spec
        self._explicit: dict[str, list[MappingEntry]] = {}
        for entry in spec.mappings:
            self._explicit.setdefault(entry.field, []).append(entry)
        self._index_cache: dict[tuple[str, ...], dict[str, str]] = {}
        canonical = list(get_field_names())
        custom = [name for name in spec.targets() if name not in set(canonical)]
        self._targets = tuple(canonical + custom)

    @property
    def targets(self) -> tuple[str, ...]:
        return self._targets

    def _normalized_index(self, source: Mapping[str, Any]) -> dict[str, str]:
        key = tuple(source.keys())
        index = self._index_cache.get(key)
        if index is None:
            index = {}
            for header in key:
                index.setdefault(normalize_header(header), header)
            if len(self._index_cache) > 64:
                self._index_cache.clear()
            self._index_cache[key] = index
        return index

    def _lookup(self, source: Mapping[str, Any], header: str) -> tuple[str | None, Any]:
        if header in source:
            return header, source[header]
        matched = self._normalized_index(source).get(normalize_header(header))
        if matched is None:
            return None, None
        return matched, source[matched]

    def resolve(self, source: Mapping[str, Any], field: str) -> Resolution:
        for entry in self._explicit.get(field, ()):
            value = source.get(entry.source)
            if not is_blank(value):
                return Resolution(value=value, origin="explicit", source=entry.source, entry=entry)

        for candidate in self.spec.fallbacks.get(field, ()):
            matched, value = self._lookup(source, candidate)
            if matched is not None and not is_blank(value):
                return Resolution(value=value, origin="fallback", source=matched)

        if canonical_field_for(field) is not None:
            matched = self._normalized_index(source).get(field)
            if matched is not None and not is_blank(source[matched]):
                return Resolution(value=source[matched], origin="identity", source=matched)

        if field in self.spec.defaults and self.spec.defaults[field] is not None:
            return Resolution(value=self.spec.defaults[field], origin="default")

        return _UNRESOLVED

    def resolve_all(self, source: Mapping[str, Any]) -> dict[str, Resolution]:
        return {field: self.resolve(source, field) for field in self._targets}


def _log_info(message: str, extra: dict[str, Any]) -> None:
    if has_app_context():
        current_app.logger.info(message, extra=extra)


class ColumnMapService:
    """Idempotent per-(tenant, run) storage for column maps and field maps."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.session = tx.session
        self.runs = ImportRunService(tx)

    def get_map(self, run_id: int) -> ColumnMap | None:
        return (
            self.session.query(ColumnMap)
            .filter(ColumnMap.tenant_id == self.tx.tenant_id, ColumnMap.run_id == run_id)
            .one_or_none()
        )

    def get_spec(self, run_id: int) -> ColumnMapSpec | None:
        column_map = self.get_map(run_id)
        if column_map is None:
            return None
        return spec_from_payload(map_payload(column_map))

    def save_map(
        self,
        run_id: int,
        *,
        mappings: Any = None,
        fallbacks: Any = None,
        defaults: Any = None,
        joins: Any = None,
        row_rules: Any = None,
        custom_fields: Any = None,
        profile_id: str | None = None,
    ) -> ColumnMap:
        """
        Upsert the run's column map.

        Omitted sections (``None``) keep their stored value. ``joins`` given as
        a bare list is treated as "no change"; pass ``{"conditions": []}`` to
        clear joins. Staged rows are never touched.
        """

        run = self.runs.get_run(run_id)
        column_map = self.get_map(run_id)
        created = column_map is None
        if created:
            column_map = ColumnMap(tenant_id=self.tx.tenant_id, run_id=run_id, mappings={})
            self.session.add(column_map)

        try:
            if mappings is not None:
                column_map.mappings = {entry.source: entry.as_payload() for entry in parse_mappings(mappings)}
            if fallbacks is not None:
                column_map.fallbacks = {name: list(headers) for name, headers in parse_fallbacks(fallbacks).items()}
            if defaults is not None:
                column_map.defaults = parse_defaults(defaults)
            if joins is not None and not isinstance(joins, list):
                column_map.joins = {"conditions": [condition.as_payload() for condition in parse_joins(joins)]}
            if row_rules is not None:
                embedded = parse_row_rules(row_rules)
                parse_rules(embedded)
                column_map.row_rules = [dict(rule) for rule in embedded]
            if custom_fields is not None:
                column_map.custom_fields = list(parse_custom_fields(custom_fields))
        except ValidationError as exc:
            exc.tenant_id = self.tx.tenant_id
            exc.run_id = run_id
            raise
        if profile_id is not None:
            column_map.profile_id = profile_id or None

        if run.status in (ImportRunStatus.CREATED, ImportRunStatus.IMPORTING):
            self.runs.transition(run, ImportRunStatus.MAPPED)
        self.tx.flush()
        _log_info(
            "Column map saved",
            self.tx.log_extra(run_id=run_id, operation="save_map", created=created),
        )
        return column_map

    def save_spec(self, run_id: int, spec: ColumnMapSpec) -> ColumnMap:
        """Replace every section of the stored map with ``spec``."""

        payload = spec.as_payload()
        return self.save_map(
            run_id,
            mappings=payload["mappings"],
            fallbacks=payload["fallbacks"],
            defaults=payload["defaults"],
            joins=payload["joins"],
            row_rules=payload["row_rules"],
            custom_fields=payload["custom_fields"],
            profile_id=payload["profile_id"] or "",
        )

    def get_field_map(self, run_id: int) -> list[FieldMapEntry]:
        return (
            self.session.query(FieldMapEntry)
            .filter(FieldMapEntry.tenant_id == self.tx.tenant_id, FieldMapEntry.run_id == run_id)
            .order_by(FieldMapEntry.position, FieldMapEntry.id)
            .all()
        )

    def save_field_map(self, run_id: int, entries: Sequence[Mapping[str, Any]]) -> list[FieldMapEntry]:
        """Replace the run's canonical field map (delete then insert, same transaction)."""

        self.runs.get_run(run_id)
        rows: list[FieldMapEntry] = []
        for position, raw in enumerate(entries):
            if not isinstance(raw, Mapping):
                raise ValidationError("Each field map entry must be an object.", run_id=run_id)
            name = raw.get("canonical_field") or raw.get("canonicalField")
            canonical = canonical_field_for(str(name or ""))
            if canonical is None:
                raise ValidationError(f"Field map entry names unknown canonical field '{name}'.", run_id=run_id)
            transform = raw.get("transform_type") or raw.get("transformType")
            if transform is not None:
                transform = str(transform).strip().lower() or None
            if transform is not None and transform not in FIELD_MAP_TRANSFORMS:
                raise ValidationError(
                    f"Unsupported field map transform '{transform}'. Supported: {', '.join(FIELD_MAP_TRANSFORMS)}.",
                    run_id=run_id,
                )
            role = str(raw.get("source_role") or raw.get("sourceRole") or MAIN_ROLE).strip().lower()
            column = raw.get("source_column") or raw.get("sourceColumn")
            rows.append(
                FieldMapEntry(
                    tenant_id=self.tx.tenant_id,
                    run_id=run_id,
                    position=position,
                    canonical_field=canonical,
                    source_role=role,
                    source_column=str(column).strip() if column else None,
                    transform_type=transform,
                    transform_config=dict(raw.get("transform_config") or raw.get("transformConfig") or {}) or None,
                )
            )

        self.session.query(FieldMapEntry).filter(
            FieldMapEntry.tenant_id == self.tx.tenant_id, FieldMapEntry.run_id == run_id
        ).delete(synchronize_session="fetch")
        self.session.add_all(rows)
        self.tx.flush()
        return rows


def map_payload(column_map: ColumnMap) -> dict[str, Any]:
    return {
        "mappings": column_map.mappings or {},
        "fallbacks": column_map.fallbacks or {},
        "defaults": column_map.defaults or {},
        "joins": column_map.joins or {"conditions": []},
        "row_rules": column_map.row_rules or [],
        "custom_fields": column_map.custom_fields or [],
        "profile_id": column_map.profile_id,
    }


def field_map_payload(entry: FieldMapEntry) -> dict[str, Any]:
    return {
        "position": entry.position,
        "canonical_field": entry.canonical_field,
        "source_role": entry.source_role,
        "source_column": entry.source_column,
        "transform_type": entry.transform_type,
        "transform_config": entry.transform_config or {},
    }
