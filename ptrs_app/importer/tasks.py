"""
Importer Celery tasks.

Tasks run inside the Flask application context (see ``celery_app``) and
report through the persisted run tables: failures land in
``ImportRun.error_summary`` before the exception is re-raised.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from celery import shared_task
from flask import current_app

from ptrs_app.errors import bound_message
from ptrs_app.importer.mapping import MAIN_ROLE
from ptrs_app.importer.pipeline import ImportRunService, RawImportStore, stage_run
from ptrs_app.tenancy import TenantContext
from ptrs_app.utils.importer import get_pipeline_setting


def _record_run_error(tenant_id: int, run_id: int, exc: Exception) -> None:
    limit = int(get_pipeline_setting("IMPORTER_ERROR_MESSAGE_MAX_LENGTH"))
    try:
        with TenantContext().begin_tenant_transaction(tenant_id) as tx:
            run = ImportRunService(tx).get_run(run_id)
            run.error_summary = bound_message(f"{type(exc).__name__}: {exc}", limit)
    except Exception:
        current_app.logger.exception(
            "Failed to record importer task error",
            extra={"importer_tenant_id": tenant_id, "importer_run_id": run_id},
        )


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask importer worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.pipeline.ingest_csv", bind=True)
def ingest_csv(
    self,
    *,
    tenant_id: int,
    run_id: int,
    file_path: str,
    role: str = MAIN_ROLE,
    replace: bool = False,
    delimiter: str = ",",
) -> dict[str, Any]:
    """Ingest a delimited file into the run's raw rows, or into a supporting dataset when ``role`` is not main."""

    path = Path(file_path)
    try:
        if not path.exists():
            raise FileNotFoundError(f"CSV file not found: {file_path}")
        with TenantContext().begin_tenant_transaction(tenant_id) as tx:
            store = RawImportStore(tx)
            with path.open("r", encoding="utf-8-sig", newline="") as handle:
                if role == MAIN_ROLE:
                    summary = store.ingest(run_id, handle, replace=replace, delimiter=delimiter)
                else:
                    summary = store.ingest_dataset(
                        run_id, role, handle, file_name=path.name, delimiter=delimiter
                    )
    except Exception as exc:
        _record_run_error(tenant_id, run_id, exc)
        current_app.logger.exception(
            "Importer ingest task failed",
            extra={
                "importer_tenant_id": tenant_id,
                "importer_run_id": run_id,
                "importer_role": role,
                "importer_error": type(exc).__name__,
            },
        )
        raise

    payload = summary.as_dict()
    payload["run_id"] = run_id
    current_app.logger.info(
        "Importer ingest task completed",
        extra={
            "importer_tenant_id": tenant_id,
            "importer_run_id": run_id,
            "importer_role": role,
            "importer_rows_inserted": summary.rows_inserted,
            "importer_task_id": self.request.id,
        },
    )
    return payload


@shared_task(name="importer.pipeline.stage_run", bind=True)
def stage_run_task(
    self,
    *,
    tenant_id: int,
    run_id: int,
    skip_if_unchanged: bool = False,
) -> dict[str, Any]:
    """
    Stage a run in the worker.

    Failures after the execution run opens are also recorded there by the
    stage service.
    """
    try:
        summary = stage_run(tenant_id, run_id, skip_if_unchanged=skip_if_unchanged)
    except Exception as exc:
        _record_run_error(tenant_id, run_id, exc)
        current_app.logger.exception(
            "Importer stage task failed",
            extra={
                "importer_tenant_id": tenant_id,
                "importer_run_id": run_id,
                "importer_error": type(exc).__name__,
                "importer_task_id": self.request.id,
            },
        )
        raise
    return summary.as_dict()
