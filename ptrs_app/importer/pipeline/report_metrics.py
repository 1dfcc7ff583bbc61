"""
Regulator report preview computed from staged rows.

Only :class:`StagedRow` data is read, in a single keyset-paginated pass; raw
rows are never consulted. Percentages are rounded half-up to two places and
a zero denominator yields ``None`` plus a quality note.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context

from ptrs_app.errors import ValidationError
from ptrs_app.importer.values import (
    format_date,
    parse_bool,
    parse_date,
    parse_money,
    parse_number,
    payment_delay_days,
    resolve_reference_date,
    round_half_up,
    round_half_up_int,
)
from ptrs_app.models.base import utcnow
from ptrs_app.models.importer.schema import ImportRunStatus
from ptrs_app.tenancy import TenantTransaction

from .run_service import ImportRunService, merge_run_json
from .staging import StagingStore, is_excluded
from .validation import BLOCKER_CODES, ValidationService

DRAFT_KEYS = (
    "supplyChainFinanceOffered",
    "procurementFeesCharged",
    "smallBusinessPaymentObligations",
    "anzsicSubdivision",
    "industryDivision",
    "reportComments",
    "descriptionOfChanges",
    "revisedReport",
    "redactedReport",
)
REQUIRED_DECLARATIONS = (
    "supplyChainFinanceOffered",
    "procurementFeesCharged",
    "smallBusinessPaymentObligations",
)

NOTE_MISSING_TERM_DAYS = (
    "Some rows are missing payment term days; within-terms and term metrics may be incomplete."
)
NOTE_MISSING_SB_FLAG = (
    "Some rows are missing small business status; SB metrics are computed only for rows "
    "where is_small_business is true."
)
NOTE_PEPPOL = (
    "Peppol-enabled small business procurement is not currently captured in the dataset "
    "(metric returned as null)."
)
NOTE_BLOCKED = (
    "Metrics are blocked because the trade credit population cannot be reliably determined "
    "(see quality.canonical.missing). Map trade_credit_payment and excluded_trade_credit_payment "
    "so every row's population membership is known."
)
NOTE_NO_SB_ROWS = "No small business payments in the population; payment time bands are null."
NOTE_NO_WITHIN_TERMS = "No small business payments with both payment time and term days; within-terms is null."
NOTE_NO_VALUE = "Total trade credit payment value is zero; small business value share is null."


def percentile(sorted_values: Sequence[float | int], p: float) -> float | None:
    """Linear interpolation between closest ranks; ``p`` is in ``[0, 1]``."""

    if not sorted_values:
        return None
    if p <= 0:
        return float(sorted_values[0])
    if p >= 1:
        return float(sorted_values[-1])
    index = (len(sorted_values) - 1) * p
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(sorted_values[low])
    weight = index - low
    return sorted_values[low] * (1 - weight) + sorted_values[high] * weight


def mode_int(values: Iterable[int]) -> int | None:
    """Most frequent value; on a tie the value seen first wins."""

    counts: dict[int, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    best: int | None = None
    best_count = 0
    for value, count in counts.items():
        if count > best_count:
            best, best_count = value, count
    return best


def _round2(value: float | Decimal | None) -> float | None:
    if value is None:
        return None
    return round_half_up(value, 2)


def _pct(numerator: Decimal | int, denominator: Decimal | int) -> float | None:
    if not denominator:
        return None
    return _round2(Decimal(numerator) * 100 / Decimal(denominator))


def _whole_days(value: Any) -> int | None:
    number = parse_number(value)
    if number is None:
        return None
    return max(0, round_half_up_int(number))


def payment_time_for(data: Mapping[str, Any]) -> int | None:
    """Staged ``payment_time_days`` when numeric, else derived from the row's dates."""

    explicit = _whole_days(data.get("payment_time_days"))
    if explicit is not None:
        return explicit
    reference = parse_date(data.get("payment_time_reference_date"))
    if reference is None:
        reference, _ = resolve_reference_date(
            invoice_issue_date=parse_date(data.get("invoice_issue_date")),
            invoice_receipt_date=parse_date(data.get("invoice_receipt_date")),
            notice_for_payment_issue_date=parse_date(data.get("notice_for_payment_issue_date")),
            supply_date=parse_date(data.get("supply_date")),
        )
    return payment_delay_days(parse_date(data.get("payment_date")), reference)


def _flag(value: Any) -> bool | None:
    return parse_bool(value)


@dataclass
class _Accumulator:
    stage_rows: int = 0
    excluded_rows: int = 0
    empty_rows: int = 0
    missing_trade_credit: int = 0
    missing_excluded_trade_credit: int = 0
    population: int = 0
    total_value: Decimal = Decimal(0)
    missing_amount: int = 0
    missing_term_days: int = 0
    missing_sb_flag: int = 0
    sb_count: int = 0
    sb_value: Decimal = Decimal(0)
    missing_dates: int = 0
    band_30: int = 0
    band_60: int = 0
    band_over_60: int = 0
    within_known: int = 0
    within_yes: int = 0
    term_days: list[int] = field(default_factory=list)
    sb_times: list[int] = field(default_factory=list)

    def add(self, data: Mapping[str, Any], meta: Mapping[str, Any] | None) -> None:
        if is_excluded(data, meta):
            self.excluded_rows += 1
            return
        self.stage_rows += 1
        if data.get("_warning"):
            self.empty_rows += 1

        trade_credit = _flag(data.get("trade_credit_payment"))
        excluded_trade_credit = _flag(data.get("excluded_trade_credit_payment"))
        if trade_credit is None:
            self.missing_trade_credit += 1
        if excluded_trade_credit is None:
            self.missing_excluded_trade_credit += 1
        if trade_credit is not True or excluded_trade_credit is True:
            return

        self.population += 1
        amount = parse_money(data.get("payment_amount"))
        if amount is None:
            self.missing_amount += 1
        else:
            self.total_value += abs(amount)

        term = _whole_days(data.get("payment_term_days"))
        if term is None:
            self.missing_term_days += 1
        else:
            self.term_days.append(term)

        small_business = _flag(data.get("is_small_business"))
        if small_business is None:
            self.missing_sb_flag += 1
        if small_business is not True:
            return

        self.sb_count += 1
        if amount is not None:
            self.sb_value += abs(amount)
        days = payment_time_for(data)
        if days is None:
            self.missing_dates += 1
            return
        self.sb_times.append(days)
        if days <= 30:
            self.band_30 += 1
        elif days <= 60:
            self.band_60 += 1
        else:
            self.band_over_60 += 1
        if term is not None:
            self.within_known += 1
            if days <= term:
                self.within_yes += 1


class MetricsEngine:
    """Compute report previews, manage the declarations draft and finalise runs."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.runs = ImportRunService(tx)
        self.staging = StagingStore(tx)

    def compute(self, run_id: int, *, draft: Mapping[str, Any] | None = None, mode: str = "read") -> dict[str, Any]:
        run = self.runs.get_run(run_id)
        draft = dict(run.report_draft_json or {}) if draft is None else dict(draft)

        acc = _Accumulator()
        for row in self.staging.iter_rows(run_id):
            acc.add(row.data or {}, row.meta)

        missing = []
        for name, count in (
            ("trade_credit_payment", acc.missing_trade_credit),
            ("excluded_trade_credit_payment", acc.missing_excluded_trade_credit),
            ("is_small_business", acc.missing_sb_flag),
            ("payment_term_days", acc.missing_term_days),
            ("payment_time_days", acc.missing_dates),
            ("payment_amount", acc.missing_amount),
        ):
            if count:
                missing.append({"field": name, "count": count})
        blocked = bool(
            acc.missing_trade_credit
            or acc.missing_excluded_trade_credit
            or (acc.stage_rows > 0 and acc.population == 0)
        )

        notes: list[str] = []
        if blocked:
            within_pct = band_30 = band_60 = band_over = sb_share = None
        else:
            within_pct = _pct(acc.within_yes, acc.within_known)
            band_30 = _pct(acc.band_30, acc.sb_count)
            band_60 = _pct(acc.band_60, acc.sb_count)
            band_over = _pct(acc.band_over_60, acc.sb_count)
            sb_share = _pct(acc.sb_value, acc.total_value)
            if not acc.sb_count:
                notes.append(NOTE_NO_SB_ROWS)
            if not acc.within_known:
                notes.append(NOTE_NO_WITHIN_TERMS)
            if not acc.total_value:
                notes.append(NOTE_NO_VALUE)

        times = sorted(acc.sb_times)
        average = (sum(times) / len(times)) if times else None
        term_mode = mode_int(acc.term_days)
        term_min = min(acc.term_days) if acc.term_days else None
        term_max = max(acc.term_days) if acc.term_days else None

        computed = {
            "commonPaymentTermsDays": term_mode,
            "commonPaymentTermMinimum": term_min,
            "commonPaymentTermMaximum": term_max,
            "forecastPaymentTerm": term_mode,
            "forecastMinimumPaymentTerm": term_min,
            "forecastMaximumPaymentTerm": term_max,
            "receivableTermsComparedToCommonPaymentTerm": "Unknown",
            "percentageOfSbInvoicesPaidWithinPaymentTerm": within_pct,
            "averagePaymentTimeDays": _round2(average),
            "medianPaymentTimeDays": _round2(percentile(times, 0.5)),
            "p80PaymentTimeDays": _round2(percentile(times, 0.8)),
            "p95PaymentTimeDays": _round2(percentile(times, 0.95)),
            "payments30DaysOrLessPct": band_30,
            "payments31To60DaysPct": band_60,
            "paymentsMoreThan60DaysPct": band_over,
            "percentageOfSmallBusinessTradeCreditPayments": sb_share,
            "percentagePeppolEnabledSmallBusinessProcurement": None,
        }

        if acc.missing_term_days:
            notes.append(NOTE_MISSING_TERM_DAYS)
        if acc.missing_sb_flag:
            notes.append(NOTE_MISSING_SB_FLAG)
        notes.append(NOTE_PEPPOL)
        if blocked:
            notes.append(NOTE_BLOCKED)

        declarations = {
            "supplyChainFinanceOffered": draft.get("supplyChainFinanceOffered"),
            "procurementFeesCharged": draft.get("procurementFeesCharged"),
            "smallBusinessPaymentObligations": draft.get("smallBusinessPaymentObligations"),
            "anzsicSubdivision": draft.get("anzsicSubdivision"),
            "industryDivision": draft.get("industryDivision"),
            "reportComments": str(draft.get("reportComments") or ""),
            "descriptionOfChanges": str(draft.get("descriptionOfChanges") or ""),
        }
        header = {
            "reportId": run.id,
            "businessName": run.reporting_entity_name,
            "abn": run.reporting_entity_abn,
            "acn": run.reporting_entity_acn,
            "arbn": run.reporting_entity_arbn,
            "type": "Standard",
            "reportingPeriodStartDate": format_date(run.period_start),
            "reportingPeriodEndDate": format_date(run.period_end),
            "revisedReport": bool(draft.get("revisedReport")),
            "redactedReport": bool(draft.get("redactedReport")),
            "submittedDate": None,
        }
        quality = {
            "mode": mode,
            "stageRowCount": acc.stage_rows,
            "basedOnRowCount": acc.population,
            "sbRowCount": acc.sb_count,
            "missingInputs": [
                {"field": f"declarations.{key}", "severity": "warning"}
                for key in REQUIRED_DECLARATIONS
                if declarations.get(key) is None
            ],
            "canonical": {"blocked": blocked, "missing": missing},
            "notes": notes,
            "dataSignals": {
                "missingTermDaysCount": acc.missing_term_days,
                "missingSbFlagCount": acc.missing_sb_flag,
                "missingDatesCount": acc.missing_dates,
                "missingAmountCount": acc.missing_amount,
                "excludedRowCount": acc.excluded_rows,
                "emptyRowCount": acc.empty_rows,
            },
        }
        return {"header": header, "declarations": declarations, "computed": computed, "quality": quality}

    def update_draft(self, run_id: int, patch: Mapping[str, Any], *, actor: str | None = None) -> dict[str, Any]:
        """Merge known declaration keys into the run's draft and return the refreshed preview."""

        unknown = sorted(set(patch) - set(DRAFT_KEYS))
        if unknown:
            raise ValidationError(
                f"Unknown report draft keys: {', '.join(unknown)}.", tenant_id=self.tx.tenant_id, run_id=run_id
            )
        run = self.runs.get_run(run_id)
        current = dict(run.report_draft_json or {})
        merged = {key: patch[key] if patch.get(key) is not None else current.get(key) for key in DRAFT_KEYS}
        merged["revisedReport"] = bool(merged["revisedReport"])
        merged["redactedReport"] = bool(merged["redactedReport"])
        merged["updatedBy"] = actor
        merged["updatedAt"] = utcnow().isoformat()
        run.report_draft_json = merged
        self.tx.flush()
        return self.compute(run_id)

    def finalise_report(self, run_id: int, *, actor: str | None = None) -> dict[str, Any]:
        """
        Store a summary of the final preview on the run and move it to ``reported``.

        Refused while the staged rows have validation blockers or the trade
        credit population is undetermined.
        """

        run = self.runs.get_run(run_id)
        if run.status not in (ImportRunStatus.STAGED, ImportRunStatus.REPORTED):
            raise ValidationError(
                f"Run {run_id} must be staged before it can be finalised (status: {run.status.value}).",
                tenant_id=self.tx.tenant_id,
                run_id=run_id,
            )
        validation = ValidationService(self.tx).validate(run_id, mode="run")
        if validation.blocker_count:
            codes = ", ".join(
                f"{code}={validation.by_code[code]}" for code in BLOCKER_CODES if validation.by_code[code]
            )
            raise ValidationError(
                f"Run {run_id} has {validation.blocker_count} validation blocker(s) ({codes}); "
                "fix the staged data and restage before finalising.",
                tenant_id=self.tx.tenant_id,
                run_id=run_id,
            )
        preview = self.compute(run_id, mode="final")
        if preview["quality"]["canonical"]["blocked"]:
            raise ValidationError(NOTE_BLOCKED, tenant_id=self.tx.tenant_id, run_id=run_id)

        merge_run_json(
            run,
            "metrics_json",
            "report",
            {
                "finalisedAt": utcnow().isoformat(),
                "finalisedBy": actor,
                "header": preview["header"],
                "declarations": preview["declarations"],
                "computed": preview["computed"],
                "basedOnRowCount": preview["quality"]["basedOnRowCount"],
                "sbRowCount": preview["quality"]["sbRowCount"],
            },
        )
        self.runs.transition(run, ImportRunStatus.REPORTED)
        self.tx.flush()
        if has_app_context():
            current_app.logger.info(
                "Report finalised",
                extra=self.tx.log_extra(
                    run_id=run_id, operation="finalise", rows=preview["quality"]["basedOnRowCount"]
                ),
            )
        return preview
