"""
Row-level checks over a run's staged rows.

Blockers stop a run from being finalised; warnings are reported but do not.
Excluded rows are counted and otherwise skipped. Issue samples are capped so
a badly mapped file cannot produce an unbounded report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from flask import current_app, has_app_context

from ptrs_app.importer.values import digits_only, is_blank, parse_date, parse_money
from ptrs_app.models.base import utcnow
from ptrs_app.tenancy import TenantTransaction

from .run_service import ImportRunService, merge_run_json
from .staging import StagingStore, is_excluded

SAMPLE_LIMIT = 200

STATUS_PASSED = "PASSED"
STATUS_PASSED_WITH_WARNINGS = "PASSED_WITH_WARNINGS"
STATUS_BLOCKED = "BLOCKED"

BLOCKER_CODES = (
    "PAYEE_ABN_MISSING",
    "PAYEE_ABN_INVALID",
    "PAYER_ABN_MISSING",
    "PAYER_ABN_INVALID",
    "INVOICE_DATE_MISSING",
    "INVOICE_DATE_INVALID",
    "PAYMENT_DATE_MISSING",
    "PAYMENT_DATE_INVALID",
    "PAYMENT_AMOUNT_MISSING",
    "PAYMENT_AMOUNT_INVALID",
)
WARNING_CODES = (
    "PAYMENT_BEFORE_INVOICE",
    "DUPLICATE_SUSPECTED",
    "SMALL_BUSINESS_UNKNOWN",
)

_ABN_FIELDS = (("payee_entity_abn", "PAYEE"), ("payer_entity_abn", "PAYER"))
_DATE_FIELDS = (("invoice_issue_date", "INVOICE_DATE"), ("payment_date", "PAYMENT_DATE"))


def duplicate_key(data: Mapping[str, Any]) -> str:
    """Heuristic identity of a payment: ``vlookup`` when present, else a composite key."""

    vlookup = str(data.get("vlookup") or "").strip()
    if vlookup:
        return f"vlookup:{vlookup}"
    parts = (
        ("cc", str(data.get("company_code") or "").strip()),
        ("abn", digits_only(data.get("payee_entity_abn"))),
        ("ref", str(data.get("invoice_reference_number") or "").strip()),
        ("inv", str(data.get("invoice_issue_date") or "").strip()),
        ("amt", str(data.get("payment_amount") or "").strip()),
    )
    return "|".join(f"{name}:{value}" for name, value in parts)


@dataclass
class ValidationReport:
    run_id: int
    mode: str
    total_rows: int = 0
    excluded_rows: int = 0
    by_code: dict[str, int] = field(default_factory=lambda: dict.fromkeys(BLOCKER_CODES + WARNING_CODES, 0))
    blockers: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)

    @property
    def blocker_count(self) -> int:
        return sum(self.by_code[code] for code in BLOCKER_CODES)

    @property
    def warning_count(self) -> int:
        return sum(self.by_code[code] for code in WARNING_CODES)

    @property
    def status(self) -> str:
        if self.blocker_count:
            return STATUS_BLOCKED
        if self.warning_count:
            return STATUS_PASSED_WITH_WARNINGS
        return STATUS_PASSED

    def add(self, row_no: int, code: str, message: str, sample_limit: int, **extra: Any) -> None:
        self.by_code[code] += 1
        target = self.blockers if code in BLOCKER_CODES else self.warnings
        if len(target) < sample_limit:
            target.append({"rowNo": row_no, "code": code, "message": message, **extra})

    def counts(self) -> dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "excludedRows": self.excluded_rows,
            "blockers": self.blocker_count,
            "warnings": self.warning_count,
            "byCode": {code: count for code, count in self.by_code.items() if count},
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "mode": self.mode,
            "status": self.status,
            "counts": self.counts(),
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
        }


class ValidationService:
    """Check staged rows for values the regulator report cannot do without."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.runs = ImportRunService(tx)
        self.staging = StagingStore(tx)

    def validate(self, run_id: int, *, mode: str = "read", sample_limit: int = SAMPLE_LIMIT) -> ValidationReport:
        """
        Check every staged row of ``run_id``.

        In ``run`` mode the counts and status are also stored on the run under
        ``counts_json['validate']``; ``read`` mode changes nothing.
        """

        run = self.runs.get_run(run_id)
        report = ValidationReport(run_id=run_id, mode=mode)
        seen: dict[str, int] = {}
        for row in self.staging.iter_rows(run_id):
            report.total_rows += 1
            data = row.data or {}
            if is_excluded(data, row.meta):
                report.excluded_rows += 1
                continue
            self._check_row(report, row.row_no, data, seen, sample_limit)

        if mode == "run":
            merge_run_json(
                run,
                "counts_json",
                "validate",
                {"status": report.status, "validatedAt": utcnow().isoformat(), **report.counts()},
            )
            self.tx.flush()
        if has_app_context():
            current_app.logger.info(
                "Staged rows validated",
                extra=self.tx.log_extra(
                    run_id=run_id,
                    operation="validate",
                    status=report.status,
                    blockers=report.blocker_count,
                    warnings=report.warning_count,
                ),
            )
        return report

    def _check_row(
        self,
        report: ValidationReport,
        row_no: int,
        data: Mapping[str, Any],
        seen: dict[str, int],
        sample_limit: int,
    ) -> None:
        for name, prefix in _ABN_FIELDS:
            abn = digits_only(data.get(name))
            if not abn:
                report.add(row_no, f"{prefix}_ABN_MISSING", f"Missing {name}", sample_limit, field=name)
            elif len(abn) != 11:
                report.add(
                    row_no,
                    f"{prefix}_ABN_INVALID",
                    f"{name} is not an 11-digit ABN",
                    sample_limit,
                    field=name,
                    value=data.get(name),
                )

        dates = {}
        for name, prefix in _DATE_FIELDS:
            raw = data.get(name)
            dates[name] = parse_date(raw)
            if is_blank(raw):
                report.add(row_no, f"{prefix}_MISSING", f"Missing {name}", sample_limit, field=name)
            elif dates[name] is None:
                report.add(
                    row_no, f"{prefix}_INVALID", f"{name} is not a valid date", sample_limit, field=name, value=raw
                )

        invoiced, paid = dates["invoice_issue_date"], dates["payment_date"]
        if invoiced and paid and paid < invoiced:
            report.add(
                row_no,
                "PAYMENT_BEFORE_INVOICE",
                "payment_date is earlier than invoice_issue_date (check for credit notes or adjustments)",
                sample_limit,
                invoice_issue_date=invoiced.isoformat(),
                payment_date=paid.isoformat(),
            )

        amount = data.get("payment_amount")
        if is_blank(amount):
            report.add(row_no, "PAYMENT_AMOUNT_MISSING", "Missing payment_amount", sample_limit, field="payment_amount")
        elif parse_money(amount) is None:
            report.add(
                row_no,
                "PAYMENT_AMOUNT_INVALID",
                "payment_amount is not a valid amount",
                sample_limit,
                field="payment_amount",
                value=amount,
            )

        key = duplicate_key(data)
        if key in seen:
            report.add(
                row_no,
                "DUPLICATE_SUSPECTED",
                "Row matches an earlier row on the duplicate key",
                sample_limit,
                duplicateOfRowNo=seen[key],
                key=key,
            )
        else:
            seen[key] = row_no

        if data.get("is_small_business") is None:
            report.add(
                row_no,
                "SMALL_BUSINESS_UNKNOWN",
                "Small business status is missing",
                sample_limit,
                field="is_small_business",
            )
