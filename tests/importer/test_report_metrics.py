from __future__ import annotations

import pytest

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.pipeline import ImportRunService, MetricsEngine, StagingStore, mode_int, percentile
from ptrs_app.importer.pipeline.report_metrics import (
    NOTE_BLOCKED,
    NOTE_MISSING_TERM_DAYS,
    NOTE_NO_SB_ROWS,
    NOTE_PEPPOL,
    payment_time_for,
)
from ptrs_app.importer.pipeline.staging import build_row_meta
from ptrs_app.models import db
from ptrs_app.models.importer.schema import ImportRunStatus, StagedRow

POPULATION = [
    {"is_small_business": True, "payment_amount": "100", "payment_term_days": 30, "payment_time_days": 10},
    {"is_small_business": True, "payment_amount": "300", "payment_term_days": 30, "payment_time_days": 40},
    {"is_small_business": False, "payment_amount": "600", "payment_term_days": 60, "payment_time_days": 20},
    {"is_small_business": True, "payment_amount": "(200)", "payment_time_days": 70},
    {"is_small_business": True, "payment_amount": "1000", "payment_time_days": 5, "exclude_from_metrics": True},
    {"is_small_business": True, "payment_amount": "50", "excluded_trade_credit_payment": True},
]

COMPLETE = {
    "payer_entity_abn": "51824753556",
    "payee_entity_abn": "11111111111",
    "invoice_issue_date": "2024-01-02",
    "payment_date": "2024-01-12",
}


def _stage_rows(tenant_context, tenant_id, run_id, rows, *, status=ImportRunStatus.STAGED):
    pairs = []
    for row_no, values in enumerate(rows, start=1):
        data = {"trade_credit_payment": True, "excluded_trade_credit_payment": False, **values}
        row = CanonicalRow(row_no, data)
        pairs.append((row, build_row_meta(row, stage="stage", at="2024-07-01T00:00:00+00:00", rules_exclude=False)))
    with tenant_context.begin_tenant_transaction(tenant_id) as tx:
        StagingStore(tx).persist(run_id, pairs)
        ImportRunService(tx).get_run(run_id).status = status


def _complete(rows):
    return [{**COMPLETE, **values} for values in rows]


MALFORMED = [
    {
        "is_small_business": True,
        "payment_amount": "abc",
        "payment_term_days": 30,
        "payment_date": "not-a-date",
        "invoice_issue_date": "2024-01-01",
    },
    {
        "is_small_business": True,
        "payment_amount": "100",
        "payment_term_days": 30,
        "payment_time_days": "soon",
        "payment_date": "2024-01-20",
        "invoice_issue_date": "2024-01-01",
    },
    {"is_small_business": "maybe", "payment_amount": "50", "payment_term_days": 30},
]


def test_percentile_interpolates_between_ranks():
    values = [10, 20, 30, 40]

    assert percentile(values, 0) == 10
    assert percentile(values, 0.5) == 25
    assert percentile(values, 1) == 40
    assert percentile([], 0.5) is None


def test_mode_prefers_first_seen_on_tie():
    assert mode_int([30, 60, 60, 30, 14]) == 30
    assert mode_int([14, 30, 30]) == 30
    assert mode_int([]) is None


def test_payment_time_falls_back_to_dates():
    assert payment_time_for({"payment_time_days": "12"}) == 12
    assert payment_time_for({"payment_date": "2024-02-10", "invoice_issue_date": "2024-01-01"}) == 40
    assert payment_time_for({"payment_date": "2024-01-01", "supply_date": "2024-02-01"}) == 0
    assert payment_time_for({"payment_date": "2024-01-01"}) is None


def test_compute_report_metrics(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(tenant_context, tenant.id, run_id, POPULATION)

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        report = MetricsEngine(tx).compute(run_id)

    computed = report["computed"]
    quality = report["quality"]

    assert quality["stageRowCount"] == 5
    assert quality["basedOnRowCount"] == 4
    assert quality["sbRowCount"] == 3
    assert quality["canonical"] == {"blocked": False, "missing": [{"field": "payment_term_days", "count": 1}]}
    assert quality["dataSignals"]["excludedRowCount"] == 1
    assert NOTE_MISSING_TERM_DAYS in quality["notes"]
    assert NOTE_PEPPOL in quality["notes"]

    assert computed["commonPaymentTermsDays"] == 30
    assert computed["commonPaymentTermMinimum"] == 30
    assert computed["commonPaymentTermMaximum"] == 60
    assert computed["averagePaymentTimeDays"] == 40.0
    assert computed["medianPaymentTimeDays"] == 40.0
    assert computed["p80PaymentTimeDays"] == 58.0
    assert computed["p95PaymentTimeDays"] == 67.0
    assert computed["payments30DaysOrLessPct"] == 33.33
    assert computed["payments31To60DaysPct"] == 33.33
    assert computed["paymentsMoreThan60DaysPct"] == 33.33
    assert computed["percentageOfSbInvoicesPaidWithinPaymentTerm"] == 50.0
    assert computed["percentageOfSmallBusinessTradeCreditPayments"] == 50.0
    assert computed["percentagePeppolEnabledSmallBusinessProcurement"] is None

    header = report["header"]
    assert header["businessName"] == "Acme Holdings Pty Ltd"
    assert header["reportingPeriodStartDate"] == "2024-01-01"
    assert header["reportingPeriodEndDate"] == "2024-06-30"


def test_zero_denominators_yield_null_with_note(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(
        tenant_context,
        tenant.id,
        run_id,
        [{"is_small_business": False, "payment_amount": "100", "payment_term_days": 30, "payment_time_days": 10}],
    )

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        report = MetricsEngine(tx).compute(run_id)

    assert report["computed"]["payments30DaysOrLessPct"] is None
    assert report["computed"]["percentageOfSbInvoicesPaidWithinPaymentTerm"] is None
    assert report["computed"]["averagePaymentTimeDays"] is None
    assert NOTE_NO_SB_ROWS in report["quality"]["notes"]


def test_missing_population_flags_block_metrics(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(
        tenant_context,
        tenant.id,
        run_id,
        _complete(
            [{"is_small_business": True, "payment_amount": "100", "payment_time_days": 10, "trade_credit_payment": None}]
        ),
    )

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        report = MetricsEngine(tx).compute(run_id)

    assert report["quality"]["canonical"]["blocked"] is True
    assert {"field": "trade_credit_payment", "count": 1} in report["quality"]["canonical"]["missing"]
    assert report["computed"]["payments30DaysOrLessPct"] is None
    assert NOTE_BLOCKED in report["quality"]["notes"]

    with pytest.raises(ValidationError) as excinfo:
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            MetricsEngine(tx).finalise_report(run_id, actor="ops@acme.test")
    assert excinfo.value.message == NOTE_BLOCKED


def test_update_draft_merges_declarations(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(tenant_context, tenant.id, run_id, POPULATION[:1])

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        engine = MetricsEngine(tx)
        engine.update_draft(run_id, {"supplyChainFinanceOffered": False, "reportComments": "First report"})
        report = engine.update_draft(run_id, {"procurementFeesCharged": True}, actor="ops@acme.test")
        draft = ImportRunService(tx).get_run(run_id).report_draft_json

    assert report["declarations"]["supplyChainFinanceOffered"] is False
    assert report["declarations"]["procurementFeesCharged"] is True
    assert report["declarations"]["reportComments"] == "First report"
    assert report["quality"]["missingInputs"] == [
        {"field": "declarations.smallBusinessPaymentObligations", "severity": "warning"}
    ]
    assert draft["updatedBy"] == "ops@acme.test"

    with pytest.raises(ValidationError):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            MetricsEngine(tx).update_draft(run_id, {"notADeclaration": 1})


def test_finalise_report_requires_staged_run(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(tenant_context, tenant.id, run_id, _complete(POPULATION), status=ImportRunStatus.MAPPED)

    with pytest.raises(ValidationError):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            MetricsEngine(tx).finalise_report(run_id)

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        ImportRunService(tx).get_run(run_id).status = ImportRunStatus.STAGED

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        MetricsEngine(tx).finalise_report(run_id, actor="ops@acme.test")

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        assert run.status == ImportRunStatus.REPORTED
        assert run.metrics_json["report"]["basedOnRowCount"] == 4
        assert run.metrics_json["report"]["finalisedBy"] == "ops@acme.test"


def test_malformed_staged_values_count_as_missing(tenant, tenant_context, run_factory):
    run_id = run_factory()
    for row_no, values in enumerate(MALFORMED, start=1):
        data = {"trade_credit_payment": True, "excluded_trade_credit_payment": False, **values}
        db.session.add(StagedRow(tenant_id=tenant.id, run_id=run_id, row_no=row_no, data=data, meta=None))
    db.session.commit()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        report = MetricsEngine(tx).compute(run_id)

    quality = report["quality"]
    assert quality["basedOnRowCount"] == 3
    assert quality["sbRowCount"] == 2
    assert quality["dataSignals"]["missingAmountCount"] == 1
    assert quality["dataSignals"]["missingDatesCount"] == 1
    assert quality["dataSignals"]["missingSbFlagCount"] == 1
    assert quality["canonical"]["blocked"] is False
    assert report["computed"]["averagePaymentTimeDays"] == 19.0
    assert report["computed"]["payments30DaysOrLessPct"] == 50.0
    assert report["computed"]["percentageOfSbInvoicesPaidWithinPaymentTerm"] == 100.0
    assert report["computed"]["percentageOfSmallBusinessTradeCreditPayments"] == 66.67


def test_finalise_report_refuses_validation_blockers(tenant, tenant_context, run_factory):
    run_id = run_factory()
    _stage_rows(tenant_context, tenant.id, run_id, POPULATION)

    with pytest.raises(ValidationError) as excinfo:
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            MetricsEngine(tx).finalise_report(run_id, actor="ops@acme.test")

    assert "PAYEE_ABN_MISSING=5" in excinfo.value.message
    assert "INVOICE_DATE_MISSING=5" in excinfo.value.message
    assert "SMALL_BUSINESS_UNKNOWN" not in excinfo.value.message
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        run = ImportRunService(tx).get_run(run_id)
        assert run.status == ImportRunStatus.STAGED
        assert "report" not in (run.metrics_json or {})
