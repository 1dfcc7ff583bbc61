"""
Deterministic eligibility exclusions applied after row rules.

Predicates are registered by name and enabled through the
``IMPORTER_EXCLUSION_PREDICATES`` setting. Each predicate decides on its own
whether a canonical row is out of scope; the outcome is OR-composed with any
exclusion already set by rules.
"""

from __future__ import annotations

import hashlib
import itertools
import json
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Iterable, Mapping, Protocol, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from ptrs_app.errors import ValidationError
from ptrs_app.importer.adapters import DelimitedRowReader
from ptrs_app.importer.contracts import CanonicalRow, normalize_header
from ptrs_app.importer.values import digits_only
from ptrs_app.models.importer.schema import GovEntityRef

GOV_ENTITY_CODE = "GOV_ENTITY"


class ExclusionPredicate(Protocol):
    code: str

    def evaluate(self, row: CanonicalRow) -> str | None:
        """Return an exclusion comment when ``row`` matches, else ``None``."""

    def fingerprint(self) -> str:
        """Digest of the reference data the predicate reads."""


class GovernmentEntityPredicate:
    """Exclude payments to suppliers listed in the government-entity reference table."""

    code = GOV_ENTITY_CODE

    def __init__(self, entities: Mapping[str, GovEntityRef | Mapping[str, Any]]) -> None:
        self._entities: dict[str, tuple[str | None, str | None]] = {}
        for abn, entity in entities.items():
            key = digits_only(abn)
            if not key:
                continue
            if isinstance(entity, Mapping):
                self._entities[key] = (entity.get("name"), entity.get("category"))
            else:
                self._entities[key] = (entity.name, entity.category)

    @classmethod
    def from_session(cls, session: Session) -> "GovernmentEntityPredicate":
        return cls({ref.abn: ref for ref in session.query(GovEntityRef).all()})

    def __len__(self) -> int:
        return len(self._entities)

    def fingerprint(self) -> str:
        # Names and categories end up in exclusion comments, so they count too.
        entries = sorted([abn, name, category] for abn, (name, category) in self._entities.items())
        serialized = json.dumps(entries, separators=(",", ":"))
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def evaluate(self, row: CanonicalRow) -> str | None:
        abn = digits_only(row["payee_entity_abn"])
        if not abn or abn not in self._entities:
            return None
        name, category = self._entities[abn]
        parts = ["Government entity"]
        parts.extend(part for part in (name, category) if part)
        return " - ".join(parts)


PredicateFactory = Callable[[Session], ExclusionPredicate]

PREDICATE_REGISTRY: dict[str, PredicateFactory] = {
    "government_entity": GovernmentEntityPredicate.from_session,
}


def register_predicate(name: str, factory: PredicateFactory) -> None:
    PREDICATE_REGISTRY[name] = factory


def build_predicates(session: Session, names: Iterable[str]) -> list[ExclusionPredicate]:
    predicates: list[ExclusionPredicate] = []
    for name in names:
        factory = PREDICATE_REGISTRY.get(name)
        if factory is None:
            raise ValidationError(
                f"Unknown exclusion predicate '{name}'. Registered: {', '.join(sorted(PREDICATE_REGISTRY))}."
            )
        predicates.append(factory(session))
    return predicates


def predicate_fingerprints(names: Sequence[str], predicates: Sequence[ExclusionPredicate]) -> list[dict[str, str]]:
    """Pair each configured predicate name with the digest of its reference data."""

    return [{"name": name, "fingerprint": predicate.fingerprint()} for name, predicate in zip(names, predicates)]


@dataclass
class ExclusionStats:
    evaluated: int = 0
    excluded: int = 0
    already_excluded: int = 0
    by_code: dict[str, int] = field(default_factory=dict)

    def merge(self, other: "ExclusionStats") -> None:
        self.evaluated += other.evaluated
        self.excluded += other.excluded
        self.already_excluded += other.already_excluded
        for code, count in other.by_code.items():
            self.by_code[code] = self.by_code.get(code, 0) + count

    def as_dict(self) -> dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "excluded": self.excluded,
            "alreadyExcluded": self.already_excluded,
            "byCode": dict(self.by_code),
        }


def _matching(row: CanonicalRow, predicates: Sequence[ExclusionPredicate]) -> list[tuple[str, str]]:
    matches = []
    for predicate in predicates:
        comment = predicate.evaluate(row)
        if comment:
            matches.append((predicate.code, comment))
    return matches


def apply_exclusions(rows: Iterable[CanonicalRow], predicates: Sequence[ExclusionPredicate]) -> ExclusionStats:
    """
    Evaluate ``predicates`` against each row in place.

    A matching row is marked excluded (and out of metrics) with the first
    matching predicate's comment. Rows already excluded by rules keep their
    comment but still record the matching codes.
    """

    stats = ExclusionStats()
    for row in rows:
        stats.evaluated += 1
        matches = _matching(row, predicates)
        if not matches:
            continue
        if row.exclude:
            stats.already_excluded += 1
        else:
            stats.excluded += 1
        for code, comment in matches:
            row.mark_excluded(comment, code=code)
            stats.by_code[code] = stats.by_code.get(code, 0) + 1
        row["exclude_from_metrics"] = True
        if row["exclude_set_by"] is None:
            row["exclude_set_by"] = f"predicate:{matches[0][0]}"
        if row["exclude_reason"] is None:
            row["exclude_reason"] = matches[0][0]
    return stats


def preview_exclusions(
    rows: Iterable[CanonicalRow], predicates: Sequence[ExclusionPredicate], *, sample_limit: int = 10
) -> dict[str, Any]:
    """Report what :func:`apply_exclusions` would do without changing any row."""

    evaluated = 0
    already = 0
    by_code: dict[str, int] = {}
    samples: list[dict[str, Any]] = []
    for row in rows:
        evaluated += 1
        matches = _matching(row, predicates)
        if not matches:
            continue
        if row.exclude:
            already += 1
        for code, _ in matches:
            by_code[code] = by_code.get(code, 0) + 1
        if len(samples) < sample_limit:
            samples.append(
                {
                    "rowNo": row.row_no,
                    "payeeEntityAbn": row["payee_entity_abn"],
                    "payeeEntityName": row["payee_entity_name"],
                    "codes": [code for code, _ in matches],
                    "comment": matches[0][1],
                }
            )
    return {
        "evaluated": evaluated,
        "matched": sum(by_code.values()),
        "alreadyExcluded": already,
        "byCode": by_code,
        "samples": samples,
    }


_GOV_COLUMNS = {
    "abn": ("abn", "entity_abn"),
    "name": ("name", "entity_name", "legal_name"),
    "category": ("category", "type", "entity_type"),
}


def load_gov_entities(session: Session, stream: IO, *, replace: bool = False) -> dict[str, int]:
    """
    Upsert government-entity references from a CSV with ``abn``, ``name`` and
    ``category`` columns (header matching is case and separator insensitive).
    """

    reader = DelimitedRowReader(stream)
    rows = reader.iter_rows()
    first = next(rows, None)
    normalized = {normalize_header(header): header for header in reader.headers or ()}
    columns: dict[str, str | None] = {}
    for key, candidates in _GOV_COLUMNS.items():
        columns[key] = next((normalized[c] for c in candidates if c in normalized), None)
    if columns["abn"] is None:
        raise ValidationError("Government entity file must include an 'abn' column.")

    if replace:
        session.query(GovEntityRef).delete(synchronize_session="fetch")
    existing = {ref.abn: ref for ref in session.query(GovEntityRef).all()}

    created = updated = skipped = 0
    for source_row in itertools.chain([first] if first is not None else [], rows):
        abn = digits_only(source_row.data.get(columns["abn"]))
        if not abn:
            skipped += 1
            continue
        name = source_row.data.get(columns["name"]) if columns["name"] else None
        category = source_row.data.get(columns["category"]) if columns["category"] else None
        ref = existing.get(abn)
        if ref is None:
            ref = GovEntityRef(abn=abn)
            session.add(ref)
            existing[abn] = ref
            created += 1
        else:
            updated += 1
        ref.name = (name or "").strip() or None
        ref.category = (category or "").strip() or None

    session.flush()
    if has_app_context():
        current_app.logger.info(
            "Government entity references loaded",
            extra={"importer_created": created, "importer_updated": updated, "importer_skipped": skipped},
        )
    return {"created": created, "updated": updated, "skipped": skipped}
