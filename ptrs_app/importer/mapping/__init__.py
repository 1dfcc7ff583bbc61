"""Parsing, validation and YAML loading of per-run column maps."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

import yaml

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import resolve_target

SUPPORTED_TYPES = ("string", "money", "number", "int", "date", "bool")
MAIN_ROLE = "main"


class MappingLoadError(ValidationError):
    """Raised when a column map file cannot be loaded or validated."""


@dataclass(frozen=True)
class MappingEntry:
    source: str
    field: str
    type: str | None = None
    format: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"field": self.field}
        if self.type:
            payload["type"] = self.type
        if self.format:
            payload["format"] = self.format
        return payload


@dataclass(frozen=True)
class JoinCondition:
    """Equality join between a main-import column and a supporting dataset column."""

    from_role: str
    from_column: str
    to_role: str
    to_column: str
    join_only_fields: tuple[str, ...] = ()

    @property
    def main_column(self) -> str:
        return self.from_column if self.from_role == MAIN_ROLE else self.to_column

    @property
    def other_role(self) -> str:
        return self.to_role if self.from_role == MAIN_ROLE else self.from_role

    @property
    def other_column(self) -> str:
        return self.to_column if self.from_role == MAIN_ROLE else self.from_column

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from": {"role": self.from_role, "column": self.from_column},
            "to": {"role": self.to_role, "column": self.to_column},
        }
        if self.join_only_fields:
            payload["join_only_fields"] = list(self.join_only_fields)
        return payload


@dataclass(frozen=True)
class ColumnMapSpec:
    mappings: tuple[MappingEntry, ...] = ()
    fallbacks: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    joins: tuple[JoinCondition, ...] = ()
    row_rules: tuple[dict, ...] = ()
    custom_fields: tuple[str, ...] = ()
    profile_id: str | None = None

    def targets(self) -> tuple[str, ...]:
        """Every field this map can populate, in first-declared order."""

        ordered: dict[str, None] = {}
        for entry in self.mappings:
            ordered.setdefault(entry.field, None)
        for name in self.fallbacks:
            ordered.setdefault(name, None)
        for name in self.defaults:
            ordered.setdefault(name, None)
        for name in self.custom_fields:
            ordered.setdefault(name, None)
        return tuple(ordered)

    def as_payload(self) -> dict[str, Any]:
        return {
            "mappings": {entry.source: entry.as_payload() for entry in self.mappings},
            "fallbacks": {name: list(headers) for name, headers in self.fallbacks.items()},
            "defaults": dict(self.defaults),
            "joins": {"conditions": [condition.as_payload() for condition in self.joins]},
            "row_rules": [dict(rule) for rule in self.row_rules],
            "custom_fields": list(self.custom_fields),
            "profile_id": self.profile_id,
        }

    def checksum(self) -> str:
        return _compute_checksum(self.as_payload())


def _require_mapping(value: Any, section: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"Column map section '{section}' must be an object.")
    return value


def parse_mappings(payload: Any) -> tuple[MappingEntry, ...]:
    """Accept ``{header: "field"}`` shorthand or ``{header: {field, type, format}}``."""

    entries: list[MappingEntry] = []
    for source, spec in _require_mapping(payload, "mappings").items():
        source_header = str(source).strip()
        if not source_header:
            raise ValidationError("Column map contains a mapping with an empty source header.")
        if spec is None or (isinstance(spec, str) and not spec.strip()):
            continue
        if isinstance(spec, str):
            entries.append(MappingEntry(source=source_header, field=resolve_target(spec)))
            continue
        if not isinstance(spec, Mapping):
            raise ValidationError(f"Mapping for '{source_header}' must be a field name or an object.")
        target = spec.get("field") or spec.get("target")
        if not target or not str(target).strip():
            raise ValidationError(f"Mapping for '{source_header}' is missing 'field'.")
        type_name = spec.get("type")
        if type_name is not None:
            type_name = str(type_name).strip().lower()
            if type_name not in SUPPORTED_TYPES:
                raise ValidationError(
                    f"Mapping for '{source_header}' has unsupported type '{type_name}'. "
                    f"Supported: {', '.join(SUPPORTED_TYPES)}."
                )
        fmt = spec.get("format")
        entries.append(
            MappingEntry(
                source=source_header,
                field=resolve_target(str(target)),
                type=type_name or None,
                format=str(fmt) if fmt else None,
            )
        )
    return tuple(entries)


def parse_fallbacks(payload: Any) -> dict[str, tuple[str, ...]]:
    fallbacks: dict[str, tuple[str, ...]] = {}
    for target, headers in _require_mapping(payload, "fallbacks").items():
        if isinstance(headers, str):
            headers = [headers]
        if not isinstance(headers, Sequence):
            raise ValidationError(f"Fallbacks for '{target}' must be a list of headers.")
        cleaned = tuple(str(header).strip() for header in headers if str(header).strip())
        if cleaned:
            fallbacks[resolve_target(str(target))] = cleaned
    return fallbacks


def parse_defaults(payload: Any) -> dict[str, Any]:
    return {resolve_target(str(target)): value for target, value in _require_mapping(payload, "defaults").items()}


def _normalize_side(side: Any, label: str) -> tuple[str, str]:
    if not isinstance(side, Mapping):
        raise ValidationError(f"Join '{label}' side must be an object with role and column.")
    role = str(side.get("role") or "").strip().lower()
    column = str(side.get("column") or "").strip()
    if not role or not column:
        raise ValidationError(f"Join '{label}' side requires both role and column.")
    return role, column


def parse_joins(payload: Any) -> tuple[JoinCondition, ...]:
    conditions_payload = _require_mapping(payload, "joins").get("conditions") or []
    if not isinstance(conditions_payload, Sequence) or isinstance(conditions_payload, str):
        raise ValidationError("Join 'conditions' must be a list.")
    conditions: list[JoinCondition] = []
    for raw in conditions_payload:
        if not isinstance(raw, Mapping):
            raise ValidationError("Each join condition must be an object.")
        from_role, from_column = _normalize_side(raw.get("from"), "from")
        to_role, to_column = _normalize_side(raw.get("to"), "to")
        if MAIN_ROLE not in (from_role, to_role):
            raise ValidationError("Each join condition must include the 'main' role on one side.")
        if from_role == to_role:
            raise ValidationError("A join condition cannot join a role to itself.")
        join_only = raw.get("join_only_fields") or raw.get("joinOnlyFields") or ()
        if isinstance(join_only, str):
            join_only = [join_only]
        conditions.append(
            JoinCondition(
                from_role,
                from_column,
                to_role,
                to_column,
                tuple(str(name).strip() for name in join_only if str(name).strip()),
            )
        )
    return tuple(conditions)


def parse_custom_fields(payload: Any) -> tuple[str, ...]:
    if payload is None:
        return ()
    if not isinstance(payload, Sequence) or isinstance(payload, str):
        raise ValidationError("Column map 'custom_fields' must be a list.")
    return tuple(resolve_target(str(item)) for item in payload if str(item).strip())


def parse_row_rules(payload: Any) -> tuple[dict, ...]:
    if payload is None:
        return ()
    if not isinstance(payload, Sequence) or isinstance(payload, str):
        raise ValidationError("Column map 'row_rules' must be a list.")
    rules: list[dict] = []
    for item in payload:
        if not isinstance(item, Mapping):
            raise ValidationError("Each row rule must be an object.")
        rules.append(dict(item))
    return tuple(rules)


def spec_from_payload(payload: Mapping[str, Any]) -> ColumnMapSpec:
    """Build a spec from stored or user-supplied payload (all sections optional)."""

    return ColumnMapSpec(
        mappings=parse_mappings(payload.get("mappings")),
        fallbacks=parse_fallbacks(payload.get("fallbacks")),
        defaults=parse_defaults(payload.get("defaults")),
        joins=parse_joins(payload.get("joins")),
        row_rules=parse_row_rules(payload.get("row_rules", payload.get("rules"))),
        custom_fields=parse_custom_fields(payload.get("custom_fields")),
        profile_id=(str(payload["profile_id"]) if payload.get("profile_id") else None),
    )


def load_column_map_file(path: str | Path) -> ColumnMapSpec:
    """
    Load and validate a YAML column map.

    The file mirrors the stored payload: ``version``, ``mappings``,
    ``fallbacks``, ``defaults``, ``joins``, ``rules`` and ``custom_fields``.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Column map file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse column map YAML at {path}: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise MappingLoadError(f"Column map at {path} must be a mapping at the top level.")
    try:
        version = int(raw.get("version", 1))
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid column map version: {exc}") from exc
    if version != 1:
        raise MappingLoadError(f"Unsupported column map version {version}; expected 1.")

    try:
        return spec_from_payload(raw)
    except MappingLoadError:
        raise
    except ValidationError as exc:
        raise MappingLoadError(f"{path.name}: {exc.message}") from exc


def _compute_checksum(payload: Dict[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


__all__ = [
    "ColumnMapSpec",
    "JoinCondition",
    "MAIN_ROLE",
    "MappingEntry",
    "MappingLoadError",
    "SUPPORTED_TYPES",
    "load_column_map_file",
    "parse_custom_fields",
    "parse_defaults",
    "parse_fallbacks",
    "parse_joins",
    "parse_mappings",
    "parse_row_rules",
    "spec_from_payload",
]
