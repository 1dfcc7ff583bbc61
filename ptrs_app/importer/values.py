"""
Value codecs shared by the composer, rule engine and metrics engine.

Source files arrive from accounting exports with inconsistent money and date
formats; these helpers turn cell text into typed values and return ``None``
when a value cannot be read rather than guessing.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_SERIAL_MIN = 30000
_EXCEL_SERIAL_MAX = 60000

_CURRENCY_TOKENS = re.compile(r"(?i)AUD|A\$|[$€£¥]")
_THOUSANDS_ONLY = re.compile(r"^-?\d{1,3}(,\d{3})+(\.\d+)?$")
_NUMERIC = re.compile(r"^-?\d*(\.\d+)?$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_SLASH_YMD = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")
_DMY = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")
_D_MON_Y = re.compile(r"^(\d{1,2})[ \-]([A-Za-z]{3,9})[ \-,]+(\d{4})$")
_COMPACT_YMD = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_TERM_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")

_MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_TRUE_TOKENS = {"true", "t", "yes", "y", "1"}
_FALSE_TOKENS = {"false", "f", "no", "n", "0"}


def is_blank(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_money(value: object | None) -> Decimal | None:
    """
    Parse a money cell, preserving sign.

    ``"$1,234.56"`` and ``"1234.56"`` both yield ``Decimal("1234.56")``;
    accounting negatives such as ``"(500.00)"`` yield ``Decimal("-500.00")``.
    Returns ``None`` for anything that is not unambiguously numeric.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None

    text = str(value).strip()
    if not text:
        return None

    text = text.replace("−", "-")
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    text = _CURRENCY_TOKENS.sub("", text)
    text = re.sub(r"\s+", "", text)

    if "," in text and "." in text:
        text = text.replace(",", "")
    elif "," in text and _THOUSANDS_ONLY.match(text):
        text = text.replace(",", "")

    if text.startswith("+"):
        text = text[1:]

    if text in ("", "-", ".", "-.") or not _NUMERIC.match(text):
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if negative:
        parsed = -abs(parsed)
    return parsed


def format_money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


def parse_number(value: object | None) -> Decimal | None:
    """Parse a plain number, tolerating thousands separators and spaces."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return parse_money(value)
    text = str(value).strip().replace(",", "").replace(" ", "")
    if not text or not _NUMERIC.match(text) or text in ("-", ".", "-."):
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def round_half_up(value: Decimal | float | int, places: int = 2) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def round_half_up_int(value: Decimal | float | int) -> int:
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_int(value: object | None) -> int | None:
    """Parse whole days; fractional input is rounded half-up."""

    number = parse_number(value)
    if number is None:
        return None
    return round_half_up_int(number)


def parse_term_days(value: object | None) -> int | None:
    """Extract a day count from free-text terms such as ``"Net 30"`` or ``"30 days"``."""

    direct = parse_int(value)
    if direct is not None:
        return direct
    if is_blank(value):
        return None
    match = _TERM_NUMBER.search(str(value))
    if not match:
        return None
    return round_half_up_int(Decimal(match.group(1)))


def parse_bool(value: object | None) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    token = str(value).strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _from_excel_serial(number: Decimal) -> date | None:
    if _EXCEL_SERIAL_MIN <= number <= _EXCEL_SERIAL_MAX:
        return _EXCEL_EPOCH + timedelta(days=int(number))
    return None


def parse_date(value: object | None, fmt: str | None = None) -> date | None:
    """
    Parse a date cell.

    Accepted inputs, in order: ``date``/``datetime`` objects, an explicit
    ``strptime`` format, ``yyyymmdd``, Excel serial numbers (30000–60000),
    ISO ``yyyy-mm-dd[Thh:mm...]``, ``yyyy/mm/dd``, day-first ``dd/mm/yyyy``
    and ``dd Mon yyyy``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float, Decimal)):
        return _from_excel_serial(Decimal(str(value)))

    text = str(value).strip()
    if not text:
        return None

    if fmt:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            return None

    match = _COMPACT_YMD.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    if re.fullmatch(r"\d+(\.\d+)?", text):
        return _from_excel_serial(Decimal(text))

    match = _ISO_DATE.match(text) or _SLASH_YMD.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _DMY.match(text)
    if match:
        return _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))

    match = _D_MON_Y.match(text)
    if match:
        month = _MONTHS.get(match.group(2)[:3].lower())
        if month is None:
            return None
        return _safe_date(int(match.group(3)), month, int(match.group(1)))

    return None


def format_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def digits_only(value: object | None) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def resolve_reference_date(
    *,
    invoice_issue_date: date | None,
    invoice_receipt_date: date | None,
    notice_for_payment_issue_date: date | None,
    supply_date: date | None,
) -> tuple[date | None, str | None]:
    """
    Pick the date a payment is measured from.

    When both invoice dates exist the later one wins (it yields the shorter
    payment time); otherwise the notice date, then the supply date.
    """

    if invoice_issue_date and invoice_receipt_date:
        if invoice_receipt_date > invoice_issue_date:
            return invoice_receipt_date, "invoice_receipt"
        return invoice_issue_date, "invoice_issue"
    if invoice_issue_date:
        return invoice_issue_date, "invoice_issue"
    if invoice_receipt_date:
        return invoice_receipt_date, "invoice_receipt"
    if notice_for_payment_issue_date:
        return notice_for_payment_issue_date, "notice"
    if supply_date:
        return supply_date, "supply"
    return None, None


def payment_delay_days(payment_date: date | None, reference_date: date | None) -> int | None:
    """Whole days from reference to payment, clamped at zero."""

    if payment_date is None or reference_date is None:
        return None
    return max(0, (payment_date - reference_date).days)
