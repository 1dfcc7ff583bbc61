"""Staged canonical rows: atomic replace and paginated preview."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping

from sqlalchemy import func, insert

from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.values import parse_bool
from ptrs_app.models.importer.schema import FieldMapEntry, StagedRow
from ptrs_app.tenancy import TenantTransaction
from ptrs_app.utils.importer import get_pipeline_setting

_BOOKKEEPING_KEYS = ("exclude", "_appliedRules", "_warning", "_invalid")


@dataclass
class StagedPreview:
    headers: list[str]
    rows: list[dict[str, Any]]
    total_rows: int

    def as_dict(self) -> dict[str, Any]:
        return {"headers": list(self.headers), "rows": list(self.rows), "totalRows": self.total_rows}


def is_excluded(data: Mapping[str, Any], meta: Mapping[str, Any] | None) -> bool:
    """True when a staged row is out of scope, by exclusion flag or by a rule."""

    if parse_bool(data.get("exclude")) or parse_bool(data.get("exclude_from_metrics")):
        return True
    rules = (meta or {}).get("rules") or {}
    return bool(parse_bool(rules.get("exclude")))


def build_row_meta(
    row: CanonicalRow,
    *,
    stage: str,
    at: str,
    rules_exclude: bool,
) -> dict[str, Any]:
    return {
        "stage": stage,
        "at": at,
        "rules": {"applied": list(row.applied_rules), "exclude": bool(rules_exclude)},
        "exclusions": list(row.exclusion_codes),
    }


class StagingStore:
    """
    Write and read :class:`StagedRow` records for one tenant.

    ``persist`` runs inside the caller's tenant transaction; it only flushes,
    so a failed stage leaves the previous staged set intact after rollback.
    """

    def __init__(self, tx: TenantTransaction, *, batch_size: int | None = None) -> None:
        self.tx = tx
        self.session = tx.session
        self.batch_size = batch_size or int(get_pipeline_setting("IMPORTER_STAGE_BATCH_SIZE"))

    def _query(self, run_id: int):
        return self.session.query(StagedRow).filter(
            StagedRow.tenant_id == self.tx.tenant_id, StagedRow.run_id == run_id
        )

    def clear(self, run_id: int) -> int:
        return self._query(run_id).delete(synchronize_session=False)

    def insert_batch(self, run_id: int, rows: Iterable[tuple[CanonicalRow, Mapping[str, Any]]]) -> int:
        payload = [
            {
                "tenant_id": self.tx.tenant_id,
                "run_id": run_id,
                "row_no": row.row_no,
                "data": row.to_payload(),
                "meta": dict(meta),
            }
            for row, meta in rows
        ]
        inserted = 0
        for start in range(0, len(payload), self.batch_size):
            chunk = payload[start : start + self.batch_size]
            self.session.execute(insert(StagedRow), chunk)
            inserted += len(chunk)
        if inserted:
            self.tx.flush()
        return inserted

    def persist(self, run_id: int, rows: Iterable[tuple[CanonicalRow, Mapping[str, Any]]]) -> int:
        """Replace every staged row for ``run_id`` with ``rows``; returns the persisted count."""

        self.clear(run_id)
        return self.insert_batch(run_id, rows)

    def count(self, run_id: int) -> int:
        return (
            self.session.query(func.count(StagedRow.id))
            .filter(StagedRow.tenant_id == self.tx.tenant_id, StagedRow.run_id == run_id)
            .scalar()
            or 0
        )

    def iter_rows(self, run_id: int, *, chunk_size: int | None = None) -> Iterator[Any]:
        """Yield ``(row_no, data, meta)`` tuples in ``row_no`` order using keyset pagination."""

        size = chunk_size or self.batch_size
        last_row_no = 0
        while True:
            chunk = (
                self.session.query(StagedRow.row_no, StagedRow.data, StagedRow.meta)
                .filter(StagedRow.tenant_id == self.tx.tenant_id, StagedRow.run_id == run_id)
                .filter(StagedRow.row_no > last_row_no)
                .order_by(StagedRow.row_no)
                .limit(size)
                .all()
            )
            if not chunk:
                return
            yield from chunk
            last_row_no = chunk[-1].row_no

    def get_preview(self, run_id: int, *, limit: int = 50, offset: int = 0) -> StagedPreview:
        """
        First ``limit`` staged rows plus a header list.

        Headers follow the run's field-map order when one exists, then every
        other key found in the page, in payload order.
        """

        records = self._query(run_id).order_by(StagedRow.row_no).offset(max(offset, 0)).limit(max(limit, 0)).all()
        rows = [{"rowNo": record.row_no, **(record.data or {})} for record in records]

        ordered: dict[str, None] = {}
        field_map = (
            self.session.query(FieldMapEntry.canonical_field)
            .filter(FieldMapEntry.tenant_id == self.tx.tenant_id, FieldMapEntry.run_id == run_id)
            .order_by(FieldMapEntry.position, FieldMapEntry.id)
            .all()
        )
        for (name,) in field_map:
            ordered.setdefault(name, None)
        for record in records:
            for key in (record.data or {}):
                if key not in _BOOKKEEPING_KEYS:
                    ordered.setdefault(key, None)

        return StagedPreview(headers=list(ordered), rows=rows, total_rows=self.count(run_id))
