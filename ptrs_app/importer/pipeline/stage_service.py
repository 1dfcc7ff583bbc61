"""
Stage orchestration: raw rows -> canonical rows -> rules -> exclusions -> staged rows.

A persisted stage uses three short tenant transactions:

1. validate the run, hash the inputs, take the per-run lock and open a
   ``running`` execution record;
2. rebuild the staged set (delete + batched insert) and mark the run staged;
3. close the execution record and release the lock.

If step 2 fails it rolls back as a unit, so the previous staged set survives,
and step 3 records the failure before the error is re-raised.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy import or_, update

from ptrs_app.errors import CapacityError, NotFoundError, StageLockedError, ValidationError, bound_message
from ptrs_app.importer.metrics import record_rows_excluded, record_stage_run
from ptrs_app.models.base import utcnow
from ptrs_app.models.importer.schema import ExecutionRunStatus, ImportRun, ImportRunStatus
from ptrs_app.tenancy import TenantContext, TenantTransaction
from ptrs_app.utils.importer import get_exclusion_predicate_names, get_pipeline_setting

from .column_map import ColumnMapService
from .composer import RowComposer, build_join_indexes
from .exclusions import ExclusionPredicate, ExclusionStats, apply_exclusions, build_predicates, predicate_fingerprints
from .execution import STAGE_STEP, ExecutionRunTracker, collect_stage_inputs, compute_input_hash
from .raw_store import RawImportStore
from .rules import RuleStats, RulesetService, apply_rules, parse_rules
from .run_service import ImportRunService, merge_run_json
from .staging import StagingStore, build_row_meta

DEFAULT_PREVIEW_ROWS = 20


def _log(level: str, message: str, extra: dict[str, Any]) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, extra=extra)


@dataclass
class StageSummary:
    run_id: int
    input_hash: str
    rows_in: int = 0
    rows_out: int = 0
    persisted: bool = True
    skipped: bool = False
    execution_id: int | None = None
    rules: dict[str, Any] = field(default_factory=dict)
    exclusions: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    preview_rows: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "run_id": self.run_id,
            "execution_id": self.execution_id,
            "input_hash": self.input_hash,
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "persisted": self.persisted,
            "skipped": self.skipped,
            "rules": dict(self.rules),
            "exclusions": dict(self.exclusions),
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if not self.persisted:
            payload["rows"] = list(self.preview_rows)
        return payload


@dataclass
class _StagePlan:
    input_hash: str
    raw_count: int
    rules: list[dict[str, Any]]
    predicates: list[ExclusionPredicate]


class StageService:
    """Run the stage pipeline for one tenant's runs."""

    def __init__(self, context: TenantContext | None = None) -> None:
        self.context = context or TenantContext()

    # ------------------------------------------------------------------
    # Planning and locking
    # ------------------------------------------------------------------
    def _plan(self, tx: TenantTransaction, run_id: int) -> _StagePlan:
        runs = ImportRunService(tx)
        runs.get_run(run_id)
        if ColumnMapService(tx).get_map(run_id) is None:
            raise ValidationError(
                f"Run {run_id} has no column map; save a map before staging.",
                tenant_id=tx.tenant_id,
                run_id=run_id,
            )
        store = RawImportStore(tx)
        raw_count = store.count_rows(run_id)
        rules = RulesetService(tx).get_rules(run_id, scope=None)
        predicate_names = get_exclusion_predicate_names()
        predicates = build_predicates(tx.session, predicate_names)
        inputs = collect_stage_inputs(
            tx,
            run_id,
            raw_row_count=raw_count,
            raw_latest_modified=store.latest_modified(run_id),
            rules=rules,
            predicates=predicate_fingerprints(predicate_names, predicates),
        )
        return _StagePlan(
            input_hash=compute_input_hash(inputs),
            raw_count=raw_count,
            rules=rules,
            predicates=predicates,
        )

    def _acquire_lock(self, tx: TenantTransaction, run_id: int) -> str:
        token = uuid.uuid4().hex
        now = utcnow()
        ttl = int(get_pipeline_setting("IMPORTER_STAGE_LOCK_TTL_SECONDS"))
        stale_before = now - timedelta(seconds=ttl)
        result = tx.session.execute(
            update(ImportRun)
            .where(
                ImportRun.id == run_id,
                ImportRun.tenant_id == tx.tenant_id,
                or_(ImportRun.stage_lock_token.is_(None), ImportRun.stage_locked_at < stale_before),
            )
            .values(stage_lock_token=token, stage_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StageLockedError(
                f"Run {run_id} is already being staged; retry once the current stage finishes.",
                tenant_id=tx.tenant_id,
                run_id=run_id,
            )
        return token

    def _release_lock(self, tx: TenantTransaction, run_id: int, token: str) -> None:
        tx.session.execute(
            update(ImportRun)
            .where(
                ImportRun.id == run_id,
                ImportRun.tenant_id == tx.tenant_id,
                ImportRun.stage_lock_token == token,
            )
            .values(stage_lock_token=None, stage_locked_at=None)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Row processing
    # ------------------------------------------------------------------
    def _process(
        self,
        tx: TenantTransaction,
        run_id: int,
        plan: _StagePlan,
        *,
        persist: bool,
        preview_limit: int,
    ) -> StageSummary:
        row_cap = int(get_pipeline_setting("IMPORTER_ROW_CAP"))
        if plan.raw_count > row_cap:
            raise CapacityError(
                f"Run {run_id} has {plan.raw_count} rows, above the row cap of {row_cap}.",
                limit=row_cap,
                actual=plan.raw_count,
                tenant_id=tx.tenant_id,
                run_id=run_id,
            )

        maps = ColumnMapService(tx)
        spec = maps.get_spec(run_id)
        if spec is None:
            raise ValidationError(f"Run {run_id} has no column map.", tenant_id=tx.tenant_id, run_id=run_id)
        store = RawImportStore(tx)
        rows_by_role: dict[str, list[dict[str, Any]]] = {}
        for condition in spec.joins:
            role = condition.other_role
            if role in rows_by_role:
                continue
            try:
                dataset = store.get_dataset(run_id, role)
            except NotFoundError as exc:
                raise ValidationError(
                    f"Join references dataset '{role}', which has not been uploaded for run {run_id}.",
                    tenant_id=tx.tenant_id,
                    run_id=run_id,
                ) from exc
            rows_by_role[role] = [dict(row.data or {}) for row in store.iter_dataset_rows(dataset)]

        composer = RowComposer(
            spec,
            field_map=maps.get_field_map(run_id),
            join_indexes=build_join_indexes(spec.joins, rows_by_role),
        )
        rules = parse_rules(plan.rules)
        staging = StagingStore(tx)
        chunk_size = int(get_pipeline_setting("IMPORTER_STAGE_BATCH_SIZE"))

        summary = StageSummary(run_id=run_id, input_hash=plan.input_hash, rows_in=plan.raw_count, persisted=persist)
        rule_stats: RuleStats | None = None
        exclusion_stats = ExclusionStats()
        rules_excluded = 0
        at = utcnow().isoformat()

        if persist:
            staging.clear(run_id)
        for chunk in store.iter_row_chunks(run_id, chunk_size=chunk_size):
            if not persist and len(summary.preview_rows) >= preview_limit:
                break
            canonical = [composer.compose(raw.row_no, raw.data or {}) for raw in chunk]
            for raw in chunk:
                tx.session.expunge(raw)

            result = apply_rules(canonical, rules)
            if rule_stats is None:
                rule_stats = result.stats
            else:
                rule_stats.merge(result.stats)
            excluded_by_rules = [row.exclude for row in canonical]
            rules_excluded += sum(excluded_by_rules)
            exclusion_stats.merge(apply_exclusions(canonical, plan.predicates))

            pairs = [
                (row, build_row_meta(row, stage=STAGE_STEP, at=at, rules_exclude=flag))
                for row, flag in zip(canonical, excluded_by_rules)
            ]
            if persist:
                summary.rows_out += staging.insert_batch(run_id, pairs)
            else:
                for row, meta in pairs:
                    if len(summary.preview_rows) >= preview_limit:
                        break
                    summary.preview_rows.append({"rowNo": row.row_no, "data": row.to_payload(), "meta": meta})
                summary.rows_out = len(summary.preview_rows)

        summary.rules = (rule_stats or apply_rules([], rules).stats).as_dict()
        summary.exclusions = {**exclusion_stats.as_dict(), "rulesExcluded": rules_excluded}

        if persist:
            run = ImportRunService(tx).get_run(run_id)
            merge_run_json(
                run,
                "counts_json",
                "stage",
                {
                    "rows_in": summary.rows_in,
                    "rows_out": summary.rows_out,
                    "input_hash": plan.input_hash,
                    "rules": summary.rules,
                    "exclusions": summary.exclusions,
                    "staged_at": at,
                },
            )
            run.error_summary = None
            ImportRunService(tx).transition(run, ImportRunStatus.STAGED)
            tx.flush()
            record_rows_excluded("rules", rules_excluded)
            for code, count in exclusion_stats.by_code.items():
                record_rows_excluded(code, count)
        return summary

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def stage(
        self,
        tenant_id: int,
        run_id: int,
        *,
        persist: bool = True,
        skip_if_unchanged: bool = False,
        preview_limit: int = DEFAULT_PREVIEW_ROWS,
    ) -> StageSummary:
        started = time.perf_counter()
        if not persist:
            return self._preview(tenant_id, run_id, preview_limit, started)

        with self.context.begin_tenant_transaction(tenant_id) as tx:
            plan = self._plan(tx, run_id)
            tracker = ExecutionRunTracker(tx)
            if skip_if_unchanged:
                latest = tracker.get_latest_execution_run(run_id, step=STAGE_STEP)
                run = ImportRunService(tx).get_run(run_id)
                if (
                    latest is not None
                    and latest.status is ExecutionRunStatus.SUCCESS
                    and latest.input_hash == plan.input_hash
                    and run.status in (ImportRunStatus.STAGED, ImportRunStatus.REPORTED)
                ):
                    summary = StageSummary(
                        run_id=run_id,
                        input_hash=plan.input_hash,
                        rows_in=plan.raw_count,
                        rows_out=latest.rows_out or 0,
                        skipped=True,
                        execution_id=latest.id,
                        rules=dict((latest.stats_json or {}).get("rules") or {}),
                        exclusions=dict((latest.stats_json or {}).get("exclusions") or {}),
                        duration_seconds=time.perf_counter() - started,
                    )
                    record_stage_run(status="skipped", duration_seconds=summary.duration_seconds)
                    _log("info", "Stage skipped; inputs unchanged", tx.log_extra(run_id=run_id, operation="stage"))
                    return summary
            token = self._acquire_lock(tx, run_id)
            execution_id = tracker.create_execution_run(
                run_id, step=STAGE_STEP, input_hash=plan.input_hash, rows_in=plan.raw_count
            ).id

        try:
            with self.context.begin_tenant_transaction(tenant_id) as tx:
                summary = self._process(tx, run_id, plan, persist=True, preview_limit=0)
        except Exception as exc:
            duration = time.perf_counter() - started
            self._record_failure(tenant_id, run_id, execution_id, token, exc)
            record_stage_run(status="failed", duration_seconds=duration)
            raise

        summary.execution_id = execution_id
        summary.duration_seconds = time.perf_counter() - started
        with self.context.begin_tenant_transaction(tenant_id) as tx:
            ExecutionRunTracker(tx).update_execution_run(
                execution_id,
                status=ExecutionRunStatus.SUCCESS,
                rows_out=summary.rows_out,
                stats={"rules": summary.rules, "exclusions": summary.exclusions},
            )
            self._release_lock(tx, run_id, token)
        record_stage_run(status="success", duration_seconds=summary.duration_seconds, rows_out=summary.rows_out)
        _log(
            "info",
            "Stage completed",
            {
                "importer_tenant_id": tenant_id,
                "importer_run_id": run_id,
                "importer_operation": "stage",
                "importer_rows_in": summary.rows_in,
                "importer_rows_out": summary.rows_out,
                "importer_duration_seconds": round(summary.duration_seconds, 3),
            },
        )
        return summary

    def _preview(self, tenant_id: int, run_id: int, limit: int, started: float) -> StageSummary:
        tx = self.context.begin_tenant_transaction(tenant_id)
        try:
            plan = self._plan(tx, run_id)
            summary = self._process(tx, run_id, plan, persist=False, preview_limit=max(limit, 0))
        finally:
            tx.rollback()
        summary.duration_seconds = time.perf_counter() - started
        return summary

    def _record_failure(
        self, tenant_id: int, run_id: int, execution_id: int, token: str, exc: Exception
    ) -> None:
        limit = int(get_pipeline_setting("IMPORTER_ERROR_MESSAGE_MAX_LENGTH"))
        message = bound_message(f"{type(exc).__name__}: {exc}", limit)
        try:
            with self.context.begin_tenant_transaction(tenant_id) as tx:
                ExecutionRunTracker(tx).update_execution_run(
                    execution_id, status=ExecutionRunStatus.FAILED, error_message=message
                )
                run = ImportRunService(tx).get_run(run_id)
                run.error_summary = message
                self._release_lock(tx, run_id, token)
        except Exception:
            _log(
                "exception",
                "Failed to record stage failure",
                {"importer_tenant_id": tenant_id, "importer_run_id": run_id, "importer_execution_id": execution_id},
            )
        _log(
            "error",
            "Stage failed",
            {
                "importer_tenant_id": tenant_id,
                "importer_run_id": run_id,
                "importer_operation": "stage",
                "importer_error": type(exc).__name__,
            },
        )


def stage_run(tenant_id: int, run_id: int, **options: Any) -> StageSummary:
    """Module-level shortcut used by the CLI and Celery tasks."""

    return StageService().stage(tenant_id, run_id, **options)
