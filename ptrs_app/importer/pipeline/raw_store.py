"""Raw import storage: streaming ingest, supporting datasets and header sampling."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any, Iterator

from flask import current_app, has_app_context
from sqlalchemy import func, insert

from ptrs_app.errors import CapacityError, NotFoundError, ValidationError
from ptrs_app.importer.adapters import DelimitedRowReader
from ptrs_app.importer.mapping import MAIN_ROLE
from ptrs_app.importer.metrics import record_rows_ingested
from ptrs_app.models.importer.schema import Dataset, DatasetRow, ImportRunStatus, RawRow
from ptrs_app.tenancy import TenantTransaction
from ptrs_app.utils.importer import get_pipeline_setting

from .run_service import ImportRunService, merge_run_json

MAX_SAMPLE_HEADERS = 2000
DATASET_SAMPLE_ROWS = 5


def _log_info(message: str, extra: dict[str, Any]) -> None:
    if has_app_context():
        current_app.logger.info(message, extra=extra)


@dataclass
class IngestSummary:
    """Outcome statistics for an ingest."""

    run_id: int
    rows_processed: int
    rows_inserted: int
    rows_skipped_blank: int
    headers: tuple[str, ...]
    batches: int
    duration_seconds: float = 0.0
    rows_with_extra_cells: int = 0
    role: str = MAIN_ROLE

    def as_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "rows_processed": self.rows_processed,
            "rows_inserted": self.rows_inserted,
            "rows_skipped_blank": self.rows_skipped_blank,
            "rows_with_extra_cells": self.rows_with_extra_cells,
            "headers": list(self.headers),
            "batches": self.batches,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class SampleResult:
    rows: list[dict[str, Any]]
    total: int
    headers: list[str]
    header_meta: dict[str, dict[str, Any]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "rows": self.rows,
            "total": self.total,
            "headers": self.headers,
            "headerMeta": self.header_meta,
        }


def _first_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


class RawImportStore:
    """Tenant-scoped access to raw rows and supporting datasets."""

    def __init__(
        self,
        tx: TenantTransaction,
        *,
        batch_size: int | None = None,
        row_cap: int | None = None,
        header_scan: int | None = None,
    ) -> None:
        self.tx = tx
        self.session = tx.session
        self.runs = ImportRunService(tx)
        self.batch_size = batch_size or int(get_pipeline_setting("IMPORTER_INGEST_BATCH_SIZE"))
        self.row_cap = row_cap or int(get_pipeline_setting("IMPORTER_ROW_CAP"))
        self.header_scan = header_scan or int(get_pipeline_setting("IMPORTER_SAMPLE_HEADER_SCAN"))

    # ------------------------------------------------------------------
    # Main import
    # ------------------------------------------------------------------
    def ingest(
        self,
        run_id: int,
        row_stream: IO,
        *,
        replace: bool = False,
        delimiter: str = ",",
    ) -> IngestSummary:
        """
        Parse ``row_stream`` and insert raw rows in bounded batches.

        Nothing is committed here; the caller's tenant transaction owns the
        commit, so a header error or a cap breach leaves no partial import.
        """

        run = self.runs.get_run(run_id)
        existing = self.count_rows(run_id)
        if existing and not replace:
            raise ValidationError(
                f"Run {run_id} already has {existing} raw rows; re-ingest with replace to overwrite.",
                tenant_id=self.tx.tenant_id,
                run_id=run_id,
            )
        if existing:
            self.session.query(RawRow).filter(
                RawRow.tenant_id == self.tx.tenant_id, RawRow.run_id == run_id
            ).delete(synchronize_session=False)

        started = time.perf_counter()
        reader = DelimitedRowReader(row_stream, delimiter=delimiter)
        pending: list[dict[str, Any]] = []
        inserted = 0
        batches = 0
        for row in reader.iter_rows():
            if row.row_no > self.row_cap:
                raise CapacityError(
                    f"Import exceeds the row cap of {self.row_cap} rows.",
                    limit=self.row_cap,
                    actual=row.row_no,
                    tenant_id=self.tx.tenant_id,
                    run_id=run_id,
                )
            pending.append(
                {"tenant_id": self.tx.tenant_id, "run_id": run_id, "row_no": row.row_no, "data": row.data}
            )
            if len(pending) >= self.batch_size:
                inserted += self._flush_batch(RawRow, pending)
                batches += 1

        if pending:
            inserted += self._flush_batch(RawRow, pending)
            batches += 1

        summary = IngestSummary(
            run_id=run_id,
            rows_processed=reader.statistics.rows_processed,
            rows_inserted=inserted,
            rows_skipped_blank=reader.statistics.rows_skipped_blank,
            rows_with_extra_cells=reader.statistics.rows_with_extra_cells,
            headers=reader.headers or (),
            batches=batches,
            duration_seconds=time.perf_counter() - started,
        )
        merge_run_json(run, "counts_json", "ingest", summary.as_dict())
        target = ImportRunStatus.MAPPED if self.runs.has_column_map(run_id) else ImportRunStatus.IMPORTING
        self.runs.transition(run, target)
        self.tx.flush()
        record_rows_ingested(MAIN_ROLE, inserted)
        _log_info(
            "Raw import ingested",
            self.tx.log_extra(
                run_id=run_id,
                operation="ingest",
                rows_inserted=inserted,
                rows_skipped_blank=summary.rows_skipped_blank,
                duration_seconds=summary.as_dict()["duration_seconds"],
            ),
        )
        return summary

    def _flush_batch(self, model, pending: list[dict[str, Any]]) -> int:
        count = len(pending)
        self.session.execute(insert(model), list(pending))
        pending.clear()
        return count

    def count_rows(self, run_id: int) -> int:
        return (
            self.session.query(func.count(RawRow.id))
            .filter(RawRow.tenant_id == self.tx.tenant_id, RawRow.run_id == run_id)
            .scalar()
            or 0
        )

    def latest_modified(self, run_id: int) -> datetime | None:
        return (
            self.session.query(func.max(RawRow.updated_at))
            .filter(RawRow.tenant_id == self.tx.tenant_id, RawRow.run_id == run_id)
            .scalar()
        )

    def iter_row_chunks(self, run_id: int, *, chunk_size: int | None = None) -> Iterator[list[RawRow]]:
        """Yield raw rows ordered by ``row_no`` in keyset-paginated chunks."""

        size = chunk_size or self.batch_size
        last_row_no = 0
        while True:
            chunk = (
                self.session.query(RawRow)
                .filter(
                    RawRow.tenant_id == self.tx.tenant_id,
                    RawRow.run_id == run_id,
                    RawRow.row_no > last_row_no,
                )
                .order_by(RawRow.row_no)
                .limit(size)
                .all()
            )
            if not chunk:
                return
            last_row_no = chunk[-1].row_no
            yield chunk

    # ------------------------------------------------------------------
    # Supporting datasets
    # ------------------------------------------------------------------
    def ingest_dataset(
        self,
        run_id: int,
        role: str,
        row_stream: IO,
        *,
        file_name: str | None = None,
        delimiter: str = ",",
    ) -> IngestSummary:
        """Ingest a supporting dataset; a dataset already stored under ``role`` is replaced."""

        self.runs.get_run(run_id)
        normalized_role = (role or "").strip().lower()
        if not normalized_role:
            raise ValidationError("A dataset role is required.", tenant_id=self.tx.tenant_id, run_id=run_id)
        if normalized_role == MAIN_ROLE:
            raise ValidationError(
                "The 'main' role is reserved for the primary import.", tenant_id=self.tx.tenant_id, run_id=run_id
            )

        self.remove_dataset(run_id, normalized_role)
        dataset = Dataset(
            tenant_id=self.tx.tenant_id,
            run_id=run_id,
            role=normalized_role,
            file_name=file_name,
            headers_json=[],
            rows_count=0,
        )
        self.session.add(dataset)
        self.tx.flush()

        started = time.perf_counter()
        reader = DelimitedRowReader(row_stream, delimiter=delimiter)
        pending: list[dict[str, Any]] = []
        inserted = 0
        batches = 0
        for row in reader.iter_rows():
            if row.row_no > self.row_cap:
                raise CapacityError(
                    f"Dataset '{normalized_role}' exceeds the row cap of {self.row_cap} rows.",
                    limit=self.row_cap,
                    actual=row.row_no,
                    tenant_id=self.tx.tenant_id,
                    run_id=run_id,
                )
            pending.append(
                {"tenant_id": self.tx.tenant_id, "dataset_id": dataset.id, "row_no": row.row_no, "data": row.data}
            )
            if len(pending) >= self.batch_size:
                inserted += self._flush_batch(DatasetRow, pending)
                batches += 1
        if pending:
            inserted += self._flush_batch(DatasetRow, pending)
            batches += 1

        dataset.headers_json = list(reader.headers or ())
        dataset.rows_count = inserted
        self.tx.flush()
        record_rows_ingested(normalized_role, inserted)
        summary = IngestSummary(
            run_id=run_id,
            rows_processed=reader.statistics.rows_processed,
            rows_inserted=inserted,
            rows_skipped_blank=reader.statistics.rows_skipped_blank,
            rows_with_extra_cells=reader.statistics.rows_with_extra_cells,
            headers=reader.headers or (),
            batches=batches,
            duration_seconds=time.perf_counter() - started,
            role=normalized_role,
        )
        _log_info(
            "Supporting dataset ingested",
            self.tx.log_extra(run_id=run_id, operation="ingest_dataset", role=normalized_role, rows_inserted=inserted),
        )
        return summary

    def list_datasets(self, run_id: int) -> list[Dataset]:
        return (
            self.session.query(Dataset)
            .filter(Dataset.tenant_id == self.tx.tenant_id, Dataset.run_id == run_id)
            .order_by(Dataset.role, Dataset.id)
            .all()
        )

    def get_dataset(self, run_id: int, role: str) -> Dataset:
        dataset = (
            self.session.query(Dataset)
            .filter(
                Dataset.tenant_id == self.tx.tenant_id,
                Dataset.run_id == run_id,
                Dataset.role == role.strip().lower(),
            )
            .one_or_none()
        )
        if dataset is None:
            raise NotFoundError(f"Dataset '{role}' not found.", tenant_id=self.tx.tenant_id, run_id=run_id)
        return dataset

    def remove_dataset(self, run_id: int, role: str) -> bool:
        normalized_role = role.strip().lower()
        datasets = (
            self.session.query(Dataset)
            .filter(
                Dataset.tenant_id == self.tx.tenant_id,
                Dataset.run_id == run_id,
                Dataset.role == normalized_role,
            )
            .all()
        )
        for dataset in datasets:
            self.session.query(DatasetRow).filter(DatasetRow.dataset_id == dataset.id).delete(
                synchronize_session=False
            )
            self.session.delete(dataset)
        if datasets:
            self.tx.flush()
        return bool(datasets)

    def iter_dataset_rows(self, dataset: Dataset) -> Iterator[DatasetRow]:
        return (
            self.session.query(DatasetRow)
            .filter(DatasetRow.tenant_id == self.tx.tenant_id, DatasetRow.dataset_id == dataset.id)
            .order_by(DatasetRow.row_no)
            .yield_per(self.batch_size)
        )

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def sample(self, run_id: int, *, limit: int = 10, offset: int = 0) -> SampleResult:
        """
        Return a page of raw rows with the header catalogue used by the map editor.

        Headers are discovered from the first ``header_scan`` rows, then
        supporting dataset headers are merged in with their ``sources`` and one
        example value per source.
        """

        self.runs.get_run(run_id)
        limit = max(0, int(limit))
        offset = max(0, int(offset))
        base = self.session.query(RawRow).filter(RawRow.tenant_id == self.tx.tenant_id, RawRow.run_id == run_id)
        total = self.count_rows(run_id)
        page = base.order_by(RawRow.row_no).offset(offset).limit(limit).all()
        rows = [{"row_no": row.row_no, "data": dict(row.data or {})} for row in page]

        headers: list[str] = []
        header_meta: dict[str, dict[str, Any]] = {}

        def _register(header: str, role: str, value: Any) -> None:
            meta = header_meta.get(header)
            if meta is None:
                if len(headers) >= MAX_SAMPLE_HEADERS:
                    return
                headers.append(header)
                meta = header_meta[header] = {"sources": [], "examples": {}, "example": None}
            if role not in meta["sources"]:
                meta["sources"].append(role)
            example = _first_value(value)
            if example is not None and role not in meta["examples"]:
                meta["examples"][role] = example
            if meta["example"] is None and example is not None:
                meta["example"] = example

        for row in base.order_by(RawRow.row_no).limit(self.header_scan):
            for header, value in (row.data or {}).items():
                _register(header, MAIN_ROLE, value)

        for dataset in self.list_datasets(run_id):
            sample_rows = (
                self.session.query(DatasetRow)
                .filter(DatasetRow.dataset_id == dataset.id)
                .order_by(DatasetRow.row_no)
                .limit(DATASET_SAMPLE_ROWS)
                .all()
            )
            dataset_headers = list(dataset.headers_json or [])
            if not dataset_headers:
                for sample_row in sample_rows:
                    for header in sample_row.data or {}:
                        if header not in dataset_headers:
                            dataset_headers.append(header)
            for header in dataset_headers:
                value = None
                for sample_row in sample_rows:
                    value = _first_value((sample_row.data or {}).get(header))
                    if value is not None:
                        break
                _register(header, dataset.role, value)

        return SampleResult(rows=rows, total=total, headers=headers, header_meta=header_meta)
