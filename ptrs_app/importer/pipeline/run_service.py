"""
Service helpers for reporting-run lifecycle and bookkeeping.

All lookups are tenant-scoped: a run id that belongs to another tenant is
reported as not found rather than leaking its existence.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping

from ptrs_app.errors import NotFoundError, ValidationError
from ptrs_app.models.importer.schema import ColumnMap, ImportRun, ImportRunStatus
from ptrs_app.tenancy import TenantTransaction

ALLOWED_TRANSITIONS: Mapping[ImportRunStatus, frozenset[ImportRunStatus]] = {
    ImportRunStatus.CREATED: frozenset({ImportRunStatus.IMPORTING, ImportRunStatus.MAPPED}),
    ImportRunStatus.IMPORTING: frozenset({ImportRunStatus.IMPORTING, ImportRunStatus.MAPPED}),
    ImportRunStatus.MAPPED: frozenset(
        {ImportRunStatus.IMPORTING, ImportRunStatus.MAPPED, ImportRunStatus.STAGED}
    ),
    ImportRunStatus.STAGED: frozenset(
        {ImportRunStatus.IMPORTING, ImportRunStatus.MAPPED, ImportRunStatus.STAGED, ImportRunStatus.REPORTED}
    ),
    ImportRunStatus.REPORTED: frozenset(
        {ImportRunStatus.IMPORTING, ImportRunStatus.MAPPED, ImportRunStatus.STAGED, ImportRunStatus.REPORTED}
    ),
}


def _coerce_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid date '{value}'; expected YYYY-MM-DD.") from exc


def _coerce_status(value: str | ImportRunStatus) -> ImportRunStatus:
    if isinstance(value, ImportRunStatus):
        return value
    try:
        return ImportRunStatus(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported run status '{value}'.") from exc


@dataclass(frozen=True)
class RunDetails:
    """Reporting entity and period captured when a run is created."""

    label: str
    entity_name: str | None = None
    abn: str | None = None
    acn: str | None = None
    arbn: str | None = None
    period_start: date | None = None
    period_end: date | None = None

    @classmethod
    def coerce(
        cls,
        *,
        label: str | None,
        entity_name: str | None = None,
        abn: str | None = None,
        acn: str | None = None,
        arbn: str | None = None,
        period_start: str | date | None = None,
        period_end: str | date | None = None,
    ) -> "RunDetails":
        resolved_label = (label or "").strip()
        if not resolved_label:
            raise ValidationError("A run label is required.")
        start = _coerce_date(period_start)
        end = _coerce_date(period_end)
        if start and end and start > end:
            raise ValidationError("period_start must be on or before period_end.")
        return cls(
            label=resolved_label,
            entity_name=(entity_name or "").strip() or None,
            abn=(abn or "").strip() or None,
            acn=(acn or "").strip() or None,
            arbn=(arbn or "").strip() or None,
            period_start=start,
            period_end=end,
        )


class ImportRunService:
    """Create, load and transition reporting runs for one tenant."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.session = tx.session

    def create_run(self, details: RunDetails) -> ImportRun:
        run = ImportRun(
            tenant_id=self.tx.tenant_id,
            label=details.label,
            status=ImportRunStatus.CREATED,
            reporting_entity_name=details.entity_name,
            reporting_entity_abn=details.abn,
            reporting_entity_acn=details.acn,
            reporting_entity_arbn=details.arbn,
            period_start=details.period_start,
            period_end=details.period_end,
            counts_json={},
            metrics_json={},
        )
        self.session.add(run)
        self.tx.flush()
        return run

    def get_run(self, run_id: int) -> ImportRun:
        run = self.session.get(ImportRun, run_id)
        if run is None or run.tenant_id != self.tx.tenant_id:
            raise NotFoundError(f"Import run {run_id} not found.", tenant_id=self.tx.tenant_id, run_id=run_id)
        return run

    def list_runs(self, *, statuses: Iterable[str | ImportRunStatus] | None = None) -> list[ImportRun]:
        query = self.session.query(ImportRun).filter(ImportRun.tenant_id == self.tx.tenant_id)
        resolved = [_coerce_status(status) for status in (statuses or ())]
        if resolved:
            query = query.filter(ImportRun.status.in_(resolved))
        return query.order_by(ImportRun.id.desc()).all()

    def has_column_map(self, run_id: int) -> bool:
        return (
            self.session.query(ColumnMap.id)
            .filter(ColumnMap.tenant_id == self.tx.tenant_id, ColumnMap.run_id == run_id)
            .first()
            is not None
        )

    def transition(self, run: ImportRun, target: ImportRunStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(run.status, frozenset())
        if target not in allowed:
            raise ValidationError(
                f"Run {run.id} cannot move from {run.status.value} to {target.value}.",
                tenant_id=run.tenant_id,
                run_id=run.id,
            )
        run.status = target


def merge_run_json(run: ImportRun, attribute: str, section: str, payload: Mapping[str, Any]) -> None:
    """Replace ``run.<attribute>[section]`` with ``payload`` and reassign so the change is persisted."""

    document = copy.deepcopy(getattr(run, attribute) or {})
    document[section] = copy.deepcopy(dict(payload))
    setattr(run, attribute, document)
