"""Canonical payment-times contract (v1.1).

Single source of truth for the fields a staged row may carry. Each field has
a value kind that drives coercion when a value is assigned to a
:class:`~ptrs_app.importer.contracts.row.CanonicalRow`, plus flags saying
whether it is required for the regulator report and/or for metrics.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Tuple


class FieldKind(str, enum.Enum):
    STRING = "string"
    MONEY = "money"
    DATE = "date"
    INT = "int"
    BOOL = "bool"
    ENUM = "enum"
    DATETIME = "datetime"


class CanonicalField(str, enum.Enum):
    """Closed set of canonical field keys."""

    PAYER_ENTITY_NAME = "payer_entity_name"
    PAYER_ENTITY_ABN = "payer_entity_abn"
    PAYER_ENTITY_ACN_ARBN = "payer_entity_acn_arbn"
    PAYEE_ENTITY_NAME = "payee_entity_name"
    PAYEE_ENTITY_ABN = "payee_entity_abn"
    PAYEE_ENTITY_ACN_ARBN = "payee_entity_acn_arbn"
    INVOICE_REFERENCE_NUMBER = "invoice_reference_number"
    PAYMENT_AMOUNT = "payment_amount"
    DESCRIPTION = "description"
    PAYMENT_DATE = "payment_date"
    SUPPLY_DATE = "supply_date"
    NOTICE_FOR_PAYMENT_ISSUE_DATE = "notice_for_payment_issue_date"
    INVOICE_ISSUE_DATE = "invoice_issue_date"
    INVOICE_RECEIPT_DATE = "invoice_receipt_date"
    INVOICE_DUE_DATE = "invoice_due_date"
    PAYMENT_TIME_REFERENCE_DATE = "payment_time_reference_date"
    PAYMENT_TIME_REFERENCE_KIND = "payment_time_reference_kind"
    CONTRACT_PO_REFERENCE_NUMBER = "contract_po_reference_number"
    CONTRACT_PO_PAYMENT_TERMS = "contract_po_payment_terms"
    NOTICE_FOR_PAYMENT_TERMS = "notice_for_payment_terms"
    INVOICE_PAYMENT_TERMS = "invoice_payment_terms"
    PAYMENT_TERM = "payment_term"
    PAYMENT_TERM_DAYS = "payment_term_days"
    PAYMENT_TERM_SOURCE = "payment_term_source"
    TRADE_CREDIT_PAYMENT = "trade_credit_payment"
    EXCLUDED_TRADE_CREDIT_PAYMENT = "excluded_trade_credit_payment"
    PEPPOL_EINVOICE_ENABLED = "peppol_einvoice_enabled"
    RCTI = "rcti"
    CREDIT_CARD_PAYMENT = "credit_card_payment"
    CREDIT_CARD_NO = "credit_card_no"
    PARTIAL_PAYMENT = "partial_payment"
    IS_SMALL_BUSINESS = "is_small_business"
    PAYMENT_TIME_DAYS = "payment_time_days"
    EXCLUDE_FROM_METRICS = "exclude_from_metrics"
    EXCLUDE_COMMENT = "exclude_comment"
    EXCLUDE_SET_AT = "exclude_set_at"
    EXCLUDE_SET_BY = "exclude_set_by"


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical field."""

    name: str
    kind: FieldKind
    description: str
    required_for_report: bool = False
    required_for_metrics: bool = False
    choices: Tuple[str, ...] = ()


_F = CanonicalField
_K = FieldKind

CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(_F.PAYER_ENTITY_NAME.value, _K.STRING, "Legal name of the paying entity.", True),
    FieldSpec(_F.PAYER_ENTITY_ABN.value, _K.STRING, "ABN of the paying entity.", True),
    FieldSpec(_F.PAYER_ENTITY_ACN_ARBN.value, _K.STRING, "ACN or ARBN of the paying entity."),
    FieldSpec(_F.PAYEE_ENTITY_NAME.value, _K.STRING, "Supplier name.", True),
    FieldSpec(_F.PAYEE_ENTITY_ABN.value, _K.STRING, "Supplier ABN.", True),
    FieldSpec(_F.PAYEE_ENTITY_ACN_ARBN.value, _K.STRING, "Supplier ACN or ARBN."),
    FieldSpec(_F.INVOICE_REFERENCE_NUMBER.value, _K.STRING, "Invoice or payment reference.", True),
    FieldSpec(_F.PAYMENT_AMOUNT.value, _K.MONEY, "Amount paid, sign preserved.", True, True),
    FieldSpec(_F.DESCRIPTION.value, _K.STRING, "Free-text payment description."),
    FieldSpec(_F.PAYMENT_DATE.value, _K.DATE, "Date the payment was made.", True, True),
    FieldSpec(_F.SUPPLY_DATE.value, _K.DATE, "Date goods or services were supplied."),
    FieldSpec(_F.NOTICE_FOR_PAYMENT_ISSUE_DATE.value, _K.DATE, "Date a notice for payment was issued."),
    FieldSpec(_F.INVOICE_ISSUE_DATE.value, _K.DATE, "Invoice issue date."),
    FieldSpec(_F.INVOICE_RECEIPT_DATE.value, _K.DATE, "Invoice receipt date."),
    FieldSpec(_F.INVOICE_DUE_DATE.value, _K.DATE, "Invoice due date."),
    FieldSpec(
        _F.PAYMENT_TIME_REFERENCE_DATE.value,
        _K.DATE,
        "Date payment time is measured from; derived when not supplied.",
        True,
        True,
    ),
    FieldSpec(
        _F.PAYMENT_TIME_REFERENCE_KIND.value,
        _K.ENUM,
        "Which source date produced the reference date.",
        choices=("invoice_issue", "invoice_receipt", "notice", "supply", "invoice_due"),
    ),
    FieldSpec(_F.CONTRACT_PO_REFERENCE_NUMBER.value, _K.STRING, "Contract or purchase order reference."),
    FieldSpec(_F.CONTRACT_PO_PAYMENT_TERMS.value, _K.STRING, "Payment terms stated on the contract or PO."),
    FieldSpec(_F.NOTICE_FOR_PAYMENT_TERMS.value, _K.STRING, "Payment terms stated on the notice for payment."),
    FieldSpec(_F.INVOICE_PAYMENT_TERMS.value, _K.STRING, "Payment terms stated on the invoice."),
    FieldSpec(_F.PAYMENT_TERM.value, _K.STRING, "Effective payment term as text."),
    FieldSpec(_F.PAYMENT_TERM_DAYS.value, _K.INT, "Effective payment term in days.", True, True),
    FieldSpec(
        _F.PAYMENT_TERM_SOURCE.value,
        _K.ENUM,
        "How payment_term_days was determined.",
        choices=("explicit_days", "parsed_payment_term", "contract_po", "notice", "invoice_terms", "unknown"),
    ),
    FieldSpec(_F.TRADE_CREDIT_PAYMENT.value, _K.BOOL, "Payment is a trade credit payment.", True, True),
    FieldSpec(
        _F.EXCLUDED_TRADE_CREDIT_PAYMENT.value,
        _K.BOOL,
        "Trade credit payment excluded from reporting.",
        True,
        True,
    ),
    FieldSpec(_F.PEPPOL_EINVOICE_ENABLED.value, _K.BOOL, "Supplier is Peppol e-invoicing enabled."),
    FieldSpec(_F.RCTI.value, _K.BOOL, "Recipient-created tax invoice."),
    FieldSpec(_F.CREDIT_CARD_PAYMENT.value, _K.BOOL, "Paid by credit card."),
    FieldSpec(_F.CREDIT_CARD_NO.value, _K.STRING, "Masked credit card identifier."),
    FieldSpec(_F.PARTIAL_PAYMENT.value, _K.BOOL, "Payment is a part payment of an invoice."),
    FieldSpec(_F.IS_SMALL_BUSINESS.value, _K.BOOL, "Supplier is a small business.", True, True),
    FieldSpec(_F.PAYMENT_TIME_DAYS.value, _K.INT, "Days from reference date to payment.", True, True),
    FieldSpec(_F.EXCLUDE_FROM_METRICS.value, _K.BOOL, "Row is excluded from computed metrics."),
    FieldSpec(_F.EXCLUDE_COMMENT.value, _K.STRING, "Reason the row was excluded."),
    FieldSpec(_F.EXCLUDE_SET_AT.value, _K.DATETIME, "When the exclusion was recorded."),
    FieldSpec(_F.EXCLUDE_SET_BY.value, _K.STRING, "Who or what recorded the exclusion."),
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s\-./]+")
_REPEATED_UNDERSCORE = re.compile(r"_+")


def normalize_header(header: str) -> str:
    """Normalize a header or field name for comparison (case/space/camelCase agnostic)."""

    token = _CAMEL_BOUNDARY.sub("_", str(header).strip().lstrip("\ufeff"))
    token = _SEPARATORS.sub("_", token.lower())
    return _REPEATED_UNDERSCORE.sub("_", token).strip("_")


def get_field_specs() -> Tuple[FieldSpec, ...]:
    return CANONICAL_FIELDS


def get_field_spec_map() -> Mapping[str, FieldSpec]:
    return {spec.name: spec for spec in CANONICAL_FIELDS}


def get_field_names() -> Tuple[str, ...]:
    return tuple(spec.name for spec in CANONICAL_FIELDS)


def get_report_required_fields() -> Tuple[str, ...]:
    return tuple(spec.name for spec in CANONICAL_FIELDS if spec.required_for_report)


def get_metrics_required_fields() -> Tuple[str, ...]:
    return tuple(spec.name for spec in CANONICAL_FIELDS if spec.required_for_metrics)


def canonical_field_for(name: str) -> str | None:
    """Return the canonical key for ``name`` (any casing) or ``None`` if it is not canonical."""

    token = normalize_header(name)
    return token if token in _FIELD_NAMES else None


def resolve_target(name: str) -> str:
    """Map a map target to its canonical key, or to a snake_case custom field key."""

    return canonical_field_for(name) or normalize_header(name)


def fields_of_kind(kind: FieldKind, names: Iterable[str] | None = None) -> Tuple[str, ...]:
    pool = set(names) if names is not None else None
    return tuple(spec.name for spec in CANONICAL_FIELDS if spec.kind is kind and (pool is None or spec.name in pool))


_FIELD_NAMES = frozenset(spec.name for spec in CANONICAL_FIELDS)
