"""
SQLAlchemy models for the payment-times import pipeline.

Every table is partitioned by ``tenant_id``; row-level tables are additionally
keyed by ``(run_id, row_no)`` so a stage can be replaced atomically without
touching the immutable raw import.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for a reporting run."""

    CREATED = "created"
    IMPORTING = "importing"
    MAPPED = "mapped"
    STAGED = "staged"
    REPORTED = "reported"


class ExecutionRunStatus(str, enum.Enum):
    """Outcome of a single pipeline step attempt."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RuleScope(str, enum.Enum):
    ROW = "row"
    CROSS_ROW = "cross_row"


class ImportRun(BaseModel):
    """A reporting run: one reporting entity and period for one tenant."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    label: Mapped[str] = mapped_column(db.String(200), nullable=False)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.CREATED,
        index=True,
    )
    reporting_entity_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    reporting_entity_abn: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    reporting_entity_acn: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    reporting_entity_arbn: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    period_start: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    report_draft_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Operator-entered declarations and header overrides for the report.",
    )
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    stage_lock_token: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    stage_locked_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    tenant = relationship("Tenant", back_populates="import_runs")

    def __repr__(self) -> str:
        return f"<ImportRun id={self.id} tenant={self.tenant_id} status={self.status}>"


class RawRow(BaseModel):
    """Immutable source row exactly as uploaded, keyed by 1-based ``row_no``."""

    __tablename__ = "import_raw_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    row_no: Mapped[int] = mapped_column(db.Integer, nullable=False)
    data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("tenant_id", "run_id", "row_no", name="uq_raw_rows_tenant_run_row"),
        Index("ix_raw_rows_run_row", "run_id", "row_no"),
    )


class Dataset(BaseModel):
    """Supporting dataset (vendor master, SB flags, ...) joined into the main import by role."""

    __tablename__ = "import_datasets"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(db.String(64), nullable=False)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    headers_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    rows_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    rows = relationship(
        "DatasetRow",
        back_populates="dataset",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DatasetRow.row_no",
    )

    __table_args__ = (UniqueConstraint("tenant_id", "run_id", "role", name="uq_datasets_tenant_run_role"),)


class DatasetRow(BaseModel):
    __tablename__ = "import_dataset_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    dataset_id: Mapped[int] = mapped_column(
        ForeignKey("import_datasets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_no: Mapped[int] = mapped_column(db.Integer, nullable=False)
    data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    dataset = relationship("Dataset", back_populates="rows")


class ColumnMap(BaseModel):
    """Per-run mapping from source headers to canonical fields."""

    __tablename__ = "column_maps"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    mappings: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    fallbacks: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    defaults: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    joins: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    row_rules: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    custom_fields: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    profile_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    __table_args__ = (UniqueConstraint("tenant_id", "run_id", name="uq_column_maps_tenant_run"),)


class FieldMapEntry(BaseModel):
    """Ordered canonical projection of a source column (main or joined role)."""

    __tablename__ = "field_map_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    canonical_field: Mapped[str] = mapped_column(db.String(100), nullable=False)
    source_role: Mapped[str] = mapped_column(db.String(64), nullable=False, default="main")
    source_column: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    transform_type: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    transform_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (Index("ix_field_map_tenant_run", "tenant_id", "run_id", "position"),)


class RulesetRule(BaseModel):
    """One stored rule of a run's ruleset; cross-row rules are validated but never executed."""

    __tablename__ = "ruleset_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    scope: Mapped[RuleScope] = mapped_column(
        Enum(RuleScope, name="rule_scope_enum"),
        nullable=False,
        default=RuleScope.ROW,
    )
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rule_key: Mapped[str] = mapped_column(db.String(128), nullable=False)
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    definition: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_ruleset_rules_tenant_run", "tenant_id", "run_id", "scope", "position"),)


class StagedRow(BaseModel):
    """Canonical row produced by the most recent successful stage."""

    __tablename__ = "staged_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    row_no: Mapped[int] = mapped_column(db.Integer, nullable=False)
    data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    meta: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "run_id", "row_no", name="uq_staged_rows_tenant_run_row"),
        Index("ix_staged_rows_run_row", "run_id", "row_no"),
    )


class ExecutionRun(db.Model):
    """Append-only audit record of one attempt at a pipeline step."""

    __tablename__ = "execution_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    step: Mapped[str] = mapped_column(db.String(32), nullable=False)
    input_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    status: Mapped[ExecutionRunStatus] = mapped_column(
        Enum(ExecutionRunStatus, name="execution_run_status_enum"),
        nullable=False,
        default=ExecutionRunStatus.RUNNING,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    rows_in: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    rows_out: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    stats_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (Index("ix_execution_runs_tenant_run_step", "tenant_id", "run_id", "step"),)

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step": self.step,
            "input_hash": self.input_hash,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "stats": self.stats_json or {},
            "error_message": self.error_message,
        }


class GovEntityRef(BaseModel):
    """Global reference list of government entities excluded from reporting."""

    __tablename__ = "gov_entity_refs"

    id: Mapped[int] = mapped_column(primary_key=True)
    abn: Mapped[str] = mapped_column(db.String(20), nullable=False, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
