from __future__ import annotations

import io
from datetime import timedelta
from decimal import Decimal

import pytest

from ptrs_app.errors import CapacityError, StageLockedError, ValidationError
from ptrs_app.importer.pipeline import (
    ExecutionRunTracker,
    ImportRunService,
    MetricsEngine,
    RulesetService,
    load_gov_entities,
    stage_run,
)
from ptrs_app.importer.pipeline.exclusions import GOV_ENTITY_CODE
from ptrs_app.models import db
from ptrs_app.models.base import utcnow
from ptrs_app.models.importer.schema import ExecutionRunStatus, ImportRunStatus, StagedRow

ABN_CSV = (
    "Payer,Payee,Payee ABN,Amount,Date\n"
    "Acme Holdings,Australian Taxation Office,51 824 753 556,500.00,2024-02-10\n"
    "Acme Holdings,Widgets Co,11 111 111 111,110.00,2024-03-01\n"
)
COMPLETE_CSV = (
    "Payer ABN,Payee,Payee ABN,Invoice Date,Amount,Date\n"
    "51 824 753 556,Widgets Co,11 111 111 111,2024-01-15,1100.00,2024-02-10\n"
    "51 824 753 556,Bolts Ltd,22 222 222 222,01/02/2024,250.50,2024-03-01\n"
)
COMPLETE_MAPPINGS = {
    "Payer ABN": "payerEntityAbn",
    "Payee": "payeeEntityName",
    "Payee ABN": "payeeEntityAbn",
    "Invoice Date": "invoiceIssueDate",
    "Amount": "paymentAmount",
    "Date": "paymentDate",
}


def _staged_rows(run_id: int) -> list[StagedRow]:
    return StagedRow.query.filter_by(run_id=run_id).order_by(StagedRow.row_no).all()


def _prepare(run_factory, ingest, save_map, **map_sections) -> int:
    run_id = run_factory()
    ingest(run_id)
    save_map(run_id, **map_sections)
    return run_id


def test_stage_run_persists_canonical_rows(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)

    summary = stage_run(tenant.id, run_id)

    assert summary.persisted is True
    assert summary.skipped is False
    assert summary.rows_in == 3
    assert summary.rows_out == 3
    assert len(summary.input_hash) == 64

    rows = _staged_rows(run_id)
    assert [row.row_no for row in rows] == [1, 2, 3]
    assert rows[0].data["payee_entity_name"] == "Widgets Co"
    assert rows[0].data["payment_amount"] == "1100.00"
    assert rows[2].data["payment_amount"] == "-75.00"
    assert rows[0].data["trade_credit_payment"] is True
    assert rows[0].meta["stage"] == "stage"

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        assert run.status == ImportRunStatus.STAGED
        assert run.stage_lock_token is None
        assert run.counts_json["stage"]["rows_out"] == 3
        execution = ExecutionRunTracker(tx).get_latest_execution_run(run_id)
        assert execution.id == summary.execution_id
        assert execution.status == ExecutionRunStatus.SUCCESS
        assert execution.rows_out == 3

        report = MetricsEngine(tx).compute(run_id)
        assert report["quality"]["basedOnRowCount"] == 3
        assert report["quality"]["stageRowCount"] == 3


def test_unchanged_inputs_skip_restaging(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)
    first = stage_run(tenant.id, run_id)

    second = stage_run(tenant.id, run_id, skip_if_unchanged=True)

    assert second.skipped is True
    assert second.input_hash == first.input_hash
    assert second.execution_id == first.execution_id
    assert second.rows_out == 3

    save_map(run_id, mappings={"Payee": "payeeEntityName", "Amount": "paymentAmount"})
    third = stage_run(tenant.id, run_id, skip_if_unchanged=True)
    assert third.skipped is False
    assert third.input_hash != first.input_hash


def test_gov_entity_changes_force_restaging(tenant, run_factory, ingest, save_map):
    run_id = run_factory()
    ingest(run_id, ABN_CSV)
    save_map(run_id, mappings={"Payee": "payeeEntityName", "Payee ABN": "payeeEntityAbn", "Amount": "paymentAmount"})
    first = stage_run(tenant.id, run_id)
    assert [row.data["exclude"] for row in _staged_rows(run_id)] == [False, False]

    load_gov_entities(db.session, io.StringIO("abn,name\n51824753556,Australian Taxation Office\n"))
    db.session.commit()
    second = stage_run(tenant.id, run_id, skip_if_unchanged=True)

    assert second.skipped is False
    assert second.input_hash != first.input_hash
    db.session.expire_all()
    assert [row.data["exclude"] for row in _staged_rows(run_id)] == [True, False]

    load_gov_entities(db.session, io.StringIO("abn,name\n51824753556,ATO\n"))
    db.session.commit()
    third = stage_run(tenant.id, run_id, skip_if_unchanged=True)

    assert third.skipped is False
    assert third.input_hash != second.input_hash
    assert stage_run(tenant.id, run_id, skip_if_unchanged=True).skipped is True


def test_restaging_replaces_previous_rows(tenant, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)
    stage_run(tenant.id, run_id)

    ingest(run_id, "Payer,Payee,Amount,Date\nAcme Holdings,Solo Pty,10.00,2024-04-01\n", replace=True)
    summary = stage_run(tenant.id, run_id)

    assert summary.rows_out == 1
    assert [row.data["payee_entity_name"] for row in _staged_rows(run_id)] == ["Solo Pty"]


def test_stage_is_refused_while_locked(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        run.stage_lock_token = "held-elsewhere"
        run.stage_locked_at = utcnow()

    with pytest.raises(StageLockedError):
        stage_run(tenant.id, run_id)
    assert _staged_rows(run_id) == []

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        ImportRunService(tx).get_run(run_id).stage_locked_at = utcnow() - timedelta(hours=1)

    summary = stage_run(tenant.id, run_id)
    assert summary.rows_out == 3


def test_preview_stage_does_not_persist(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)

    summary = stage_run(tenant.id, run_id, persist=False, preview_limit=2)

    assert summary.persisted is False
    assert summary.rows_out == 2
    assert [row["rowNo"] for row in summary.preview_rows] == [1, 2]
    assert summary.preview_rows[1]["data"]["payee_entity_name"] == "Bolts Ltd"
    assert summary.as_dict()["rows"][0]["meta"]["stage"] == "stage"
    assert _staged_rows(run_id) == []

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        assert ImportRunService(tx).get_run(run_id).status == ImportRunStatus.MAPPED
        assert ExecutionRunTracker(tx).get_latest_execution_run(run_id) is None


def test_stage_requires_column_map(tenant, run_factory, ingest):
    run_id = run_factory()
    ingest(run_id)

    with pytest.raises(ValidationError):
        stage_run(tenant.id, run_id)


def test_failed_stage_is_recorded(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(
        run_factory,
        ingest,
        save_map,
        joins={"conditions": [{"from": {"role": "main", "column": "Payee"}, "to": {"role": "vendors", "column": "Name"}}]},
    )

    with pytest.raises(ValidationError):
        stage_run(tenant.id, run_id)

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        execution = ExecutionRunTracker(tx).get_latest_execution_run(run_id)
        assert execution.status == ExecutionRunStatus.FAILED
        assert execution.error_message.startswith("ValidationError:")
        assert "vendors" in run.error_summary
        assert run.stage_lock_token is None
        assert run.status == ImportRunStatus.MAPPED
    assert _staged_rows(run_id) == []


def test_rules_and_exclusions_flow_into_staged_rows(tenant, tenant_context, run_factory, ingest, save_map):
    load_gov_entities(db.session, io.StringIO("abn,name,category\n51824753556,Australian Taxation Office,Commonwealth\n"))
    db.session.commit()

    run_id = run_factory()
    ingest(run_id, ABN_CSV)
    save_map(run_id, mappings={"Payee": "payeeEntityName", "Payee ABN": "payeeEntityAbn", "Amount": "paymentAmount"})
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        RulesetService(tx).save_rules(
            run_id,
            [
                {
                    "id": "strip-gst",
                    "when": [{"field": "payment_amount", "op": "gt", "value": 0}],
                    "then": [{"op": "div", "field": "payment_amount", "value": 1.1, "round": 2}],
                }
            ],
        )

    summary = stage_run(tenant.id, run_id)

    assert summary.rules["rowsAffected"] == 2
    assert summary.exclusions["excluded"] == 1
    assert summary.exclusions["byCode"] == {GOV_ENTITY_CODE: 1}
    assert summary.exclusions["rulesExcluded"] == 0

    ato, widgets = _staged_rows(run_id)
    assert ato.data["exclude"] is True
    assert ato.data["exclude_comment"].startswith("Government entity")
    assert ato.meta["exclusions"] == [GOV_ENTITY_CODE]
    assert widgets.data["exclude"] is False
    assert Decimal(widgets.data["payment_amount"]) == Decimal("100.00")
    assert widgets.meta["rules"]["applied"] == ["strip-gst"]

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        quality = MetricsEngine(tx).compute(run_id)["quality"]
    assert quality["basedOnRowCount"] == 1
    assert quality["dataSignals"]["excludedRowCount"] == 1


def test_finalise_after_stage_and_restage(tenant, tenant_context, run_factory, ingest, save_map):
    run_id = run_factory()
    ingest(run_id, COMPLETE_CSV)
    save_map(run_id, mappings=COMPLETE_MAPPINGS)
    stage_run(tenant.id, run_id)

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        MetricsEngine(tx).finalise_report(run_id, actor="ops@acme.test")

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        assert ImportRunService(tx).get_run(run_id).status == ImportRunStatus.REPORTED

    stage_run(tenant.id, run_id)
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        assert run.status == ImportRunStatus.STAGED
        assert "report" in run.metrics_json


def test_row_cap_at_stage_time_keeps_previous_rows(app, tenant, tenant_context, run_factory, ingest, save_map):
    run_id = _prepare(run_factory, ingest, save_map)
    stage_run(tenant.id, run_id)
    app.config["IMPORTER_ROW_CAP"] = 2

    with pytest.raises(CapacityError) as excinfo:
        stage_run(tenant.id, run_id)

    assert excinfo.value.limit == 2
    assert excinfo.value.actual == 3
    assert len(_staged_rows(run_id)) == 3
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        execution = ExecutionRunTracker(tx).get_latest_execution_run(run_id)
        assert execution.status == ExecutionRunStatus.FAILED
        assert execution.error_message.startswith("CapacityError:")
        assert run.status == ImportRunStatus.STAGED
        assert run.stage_lock_token is None
