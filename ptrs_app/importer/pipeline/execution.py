"""Execution-run audit trail and stage input hashing."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from ptrs_app.errors import NotFoundError, ValidationError, bound_message
from ptrs_app.models.base import utcnow
from ptrs_app.models.importer.schema import (
    ColumnMap,
    Dataset,
    ExecutionRun,
    ExecutionRunStatus,
    FieldMapEntry,
)
from ptrs_app.tenancy import TenantTransaction
from ptrs_app.utils.importer import get_pipeline_setting

from .column_map import field_map_payload, map_payload

STAGE_STEP = "stage"

_TERMINAL_STATUSES = (ExecutionRunStatus.SUCCESS, ExecutionRunStatus.FAILED)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; treat naive timestamps as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


@dataclass(frozen=True)
class StageInputs:
    """Everything a stage reads; two equal hashes mean the stage would produce the same rows."""

    column_map_id: int | None
    column_map: Mapping[str, Any] | None
    field_map: Sequence[Mapping[str, Any]] = ()
    raw_row_count: int = 0
    raw_latest_modified: datetime | None = None
    datasets: Sequence[Mapping[str, Any]] = ()
    rules: Sequence[Mapping[str, Any]] = ()
    predicates: Sequence[Mapping[str, str]] = field(default_factory=tuple)


def compute_input_hash(inputs: StageInputs) -> str:
    """
    Deterministic sha256 over the stage inputs.

    Field-map entries are ordered by ``(position, canonical_field)`` and
    datasets by ``(role, id)`` so retrieval order never changes the hash.
    Rules keep declaration order because evaluation depends on it.
    Each exclusion predicate contributes its name and the fingerprint of
    the reference data it reads.
    """

    document = {
        "columnMap": {"id": inputs.column_map_id, "content": inputs.column_map},
        "fieldMap": sorted(
            (dict(entry) for entry in inputs.field_map),
            key=lambda entry: (entry.get("position") or 0, entry.get("canonical_field") or ""),
        ),
        "raw": {"count": inputs.raw_row_count, "latestModified": _iso(inputs.raw_latest_modified)},
        "datasets": sorted(
            (
                {
                    "id": dataset.get("id"),
                    "role": dataset.get("role"),
                    "updatedAt": _iso(dataset.get("updated_at")),
                }
                for dataset in inputs.datasets
            ),
            key=lambda dataset: (dataset["role"] or "", dataset["id"] or 0),
        ),
        "rules": [dict(rule) for rule in inputs.rules],
        "predicates": sorted(
            ({"name": item.get("name"), "fingerprint": item.get("fingerprint")} for item in inputs.predicates),
            key=lambda item: item["name"] or "",
        ),
    }
    serialized = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def collect_stage_inputs(
    tx: TenantTransaction,
    run_id: int,
    *,
    raw_row_count: int,
    raw_latest_modified: datetime | None,
    rules: Sequence[Mapping[str, Any]],
    predicates: Sequence[Mapping[str, str]],
) -> StageInputs:
    session = tx.session
    column_map = (
        session.query(ColumnMap)
        .filter(ColumnMap.tenant_id == tx.tenant_id, ColumnMap.run_id == run_id)
        .one_or_none()
    )
    entries = (
        session.query(FieldMapEntry)
        .filter(FieldMapEntry.tenant_id == tx.tenant_id, FieldMapEntry.run_id == run_id)
        .all()
    )
    datasets = (
        session.query(Dataset.id, Dataset.role, Dataset.updated_at)
        .filter(Dataset.tenant_id == tx.tenant_id, Dataset.run_id == run_id)
        .all()
    )
    return StageInputs(
        column_map_id=column_map.id if column_map else None,
        column_map=map_payload(column_map) if column_map else None,
        field_map=[field_map_payload(entry) for entry in entries],
        raw_row_count=raw_row_count,
        raw_latest_modified=raw_latest_modified,
        datasets=[{"id": row.id, "role": row.role, "updated_at": row.updated_at} for row in datasets],
        rules=list(rules),
        predicates=tuple(dict(item) for item in predicates),
    )


class ExecutionRunTracker:
    """Create and finish :class:`ExecutionRun` records; finished runs are immutable."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.session = tx.session

    def create_execution_run(
        self, run_id: int, *, step: str = STAGE_STEP, input_hash: str, rows_in: int | None = None
    ) -> ExecutionRun:
        execution = ExecutionRun(
            tenant_id=self.tx.tenant_id,
            run_id=run_id,
            step=step,
            input_hash=input_hash,
            status=ExecutionRunStatus.RUNNING,
            started_at=utcnow(),
            rows_in=rows_in,
        )
        self.session.add(execution)
        self.tx.flush()
        return execution

    def get_execution_run(self, execution_id: int) -> ExecutionRun:
        execution = self.session.get(ExecutionRun, execution_id)
        if execution is None or execution.tenant_id != self.tx.tenant_id:
            raise NotFoundError(f"Execution run {execution_id} not found.", tenant_id=self.tx.tenant_id)
        return execution

    def update_execution_run(
        self,
        execution: ExecutionRun | int,
        *,
        status: ExecutionRunStatus | str,
        rows_out: int | None = None,
        stats: Mapping[str, Any] | None = None,
        error_message: str | None = None,
    ) -> ExecutionRun:
        if not isinstance(execution, ExecutionRun):
            execution = self.get_execution_run(execution)
        try:
            target = ExecutionRunStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unsupported execution status '{status}'.") from exc
        if execution.status is not ExecutionRunStatus.RUNNING or target not in _TERMINAL_STATUSES:
            raise ValidationError(
                f"Execution run {execution.id} cannot move from {execution.status.value} to {target.value}.",
                tenant_id=self.tx.tenant_id,
                run_id=execution.run_id,
            )

        execution.status = target
        execution.finished_at = utcnow()
        if rows_out is not None:
            execution.rows_out = rows_out
        if stats is not None:
            execution.stats_json = dict(stats)
        if error_message:
            limit = int(get_pipeline_setting("IMPORTER_ERROR_MESSAGE_MAX_LENGTH"))
            execution.error_message = bound_message(error_message, limit)
        self.tx.flush()
        return execution

    def get_latest_execution_run(self, run_id: int, *, step: str = STAGE_STEP) -> ExecutionRun | None:
        return (
            self.session.query(ExecutionRun)
            .filter(
                ExecutionRun.tenant_id == self.tx.tenant_id,
                ExecutionRun.run_id == run_id,
                ExecutionRun.step == step,
            )
            .order_by(ExecutionRun.started_at.desc(), ExecutionRun.id.desc())
            .first()
        )

    def list_execution_runs(self, run_id: int, *, step: str | None = None) -> list[ExecutionRun]:
        query = self.session.query(ExecutionRun).filter(
            ExecutionRun.tenant_id == self.tx.tenant_id, ExecutionRun.run_id == run_id
        )
        if step:
            query = query.filter(ExecutionRun.step == step)
        return query.order_by(ExecutionRun.started_at.desc(), ExecutionRun.id.desc()).all()
