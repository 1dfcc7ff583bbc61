"""
Row rules: parsing, evaluation and per-run storage.

A stored rule looks like::

    {"id": "gst", "label": "Strip GST", "enabled": true,
     "when": [{"field": "payment_amount", "op": "gt", "value": "0"}],
     "then": [{"op": "div", "field": "payment_amount", "value": 1.1, "round": 2}]}

Rules are parsed into small dataclasses so evaluation never has to inspect
raw dictionaries. Evaluation is pure; persistence lives in :class:`RulesetService`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, ClassVar, Iterable, Mapping, Sequence, Union

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.values import format_date, format_money, parse_bool, parse_number
from ptrs_app.models.importer.schema import ColumnMap, RuleScope, RulesetRule
from ptrs_app.tenancy import TenantTransaction

from .run_service import ImportRunService

CROSS_ROW_SCOPE_ERROR = (
    "Cross-row rule target scope is too broad. Add a match key or a positive target condition."
)
EXCLUDE_FIELD = "exclude"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format_money(value) or ""
    if hasattr(value, "isoformat"):
        return format_date(value) or ""
    return str(value)


def _as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    return parse_number(value)


def _loose_number(value: Any) -> Decimal:
    number = _as_number(value)
    return number if number is not None else Decimal(0)


def _read(row: CanonicalRow, name: str) -> Any:
    if name == EXCLUDE_FIELD:
        return row.exclude
    return row[name]


def _write(row: CanonicalRow, name: str, value: Any) -> None:
    if name == EXCLUDE_FIELD:
        row.exclude = bool(parse_bool(value))
        return
    row.set(name, value)


def _split_values(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [_as_text(item).strip() for item in value if _as_text(item).strip()]
    return [part.strip() for part in _as_text(value).split(",") if part.strip()]


@dataclass(frozen=True)
class Condition:
    field: str
    value: Any = None
    op: ClassVar[str] = ""

    def matches(self, row: CanonicalRow) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Eq(Condition):
    op: ClassVar[str] = "eq"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) == _as_text(self.value)


@dataclass(frozen=True)
class Neq(Condition):
    op: ClassVar[str] = "neq"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) != _as_text(self.value)


@dataclass(frozen=True)
class _Numeric(Condition):
    def matches(self, row: CanonicalRow) -> bool:
        left = _as_number(_read(row, self.field))
        right = _as_number(self.value)
        if left is None or right is None:
            return False
        return self.compare(left, right)

    def compare(self, left: Decimal, right: Decimal) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Gt(_Numeric):
    op: ClassVar[str] = "gt"

    def compare(self, left: Decimal, right: Decimal) -> bool:
        return left > right


@dataclass(frozen=True)
class Gte(_Numeric):
    op: ClassVar[str] = "gte"

    def compare(self, left: Decimal, right: Decimal) -> bool:
        return left >= right


@dataclass(frozen=True)
class Lt(_Numeric):
    op: ClassVar[str] = "lt"

    def compare(self, left: Decimal, right: Decimal) -> bool:
        return left < right


@dataclass(frozen=True)
class Lte(_Numeric):
    op: ClassVar[str] = "lte"

    def compare(self, left: Decimal, right: Decimal) -> bool:
        return left <= right


@dataclass(frozen=True)
class In(Condition):
    op: ClassVar[str] = "in"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) in _split_values(self.value)


@dataclass(frozen=True)
class NotIn(Condition):
    op: ClassVar[str] = "nin"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) not in _split_values(self.value)


@dataclass(frozen=True)
class IsNull(Condition):
    op: ClassVar[str] = "is_null"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) == ""


@dataclass(frozen=True)
class NotNull(Condition):
    op: ClassVar[str] = "not_null"

    def matches(self, row: CanonicalRow) -> bool:
        return _as_text(_read(row, self.field)) != ""


CONDITIONS: Mapping[str, type[Condition]] = {
    cls.op: cls for cls in (Eq, Neq, Gt, Gte, Lt, Lte, In, NotIn, IsNull, NotNull)
}


@dataclass(frozen=True)
class SetField:
    field: str
    value: Any

    def apply(self, row: CanonicalRow) -> None:
        _write(row, self.field, self.value)


@dataclass(frozen=True)
class CopyField:
    field: str
    source: str

    def apply(self, row: CanonicalRow) -> None:
        _write(row, self.field, _read(row, self.source))


@dataclass(frozen=True)
class Arithmetic:
    op: str
    field: str
    value: Any = None
    value_field: str | None = None
    round: int | None = None

    OPS: ClassVar[tuple[str, ...]] = ("add", "sub", "mul", "div", "assign")

    def apply(self, row: CanonicalRow) -> None:
        current = _loose_number(_read(row, self.field))
        if self.value_field:
            operand = _loose_number(_read(row, self.value_field))
        else:
            operand = _loose_number(self.value)

        if self.op == "add":
            result = current + operand
        elif self.op == "sub":
            result = current - operand
        elif self.op == "mul":
            result = current * operand
        elif self.op == "div":
            if operand == 0:
                return
            result = current / operand
        else:
            result = operand

        if self.round is not None:
            try:
                result = result.quantize(Decimal(1).scaleb(-self.round), rounding=ROUND_HALF_UP)
            except InvalidOperation:
                pass
        _write(row, self.field, result)


@dataclass(frozen=True)
class Exclude:
    comment: str | None = None

    def apply(self, row: CanonicalRow) -> None:
        row.mark_excluded(self.comment or "Excluded by rule")


Action = Union[SetField, CopyField, Arithmetic, Exclude]


@dataclass(frozen=True)
class Rule:
    key: str
    conditions: tuple[Condition, ...] = ()
    actions: tuple[Action, ...] = ()
    enabled: bool = True
    scope: RuleScope = RuleScope.ROW
    label: str | None = None
    definition: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, row: CanonicalRow) -> bool:
        return all(condition.matches(row) for condition in self.conditions)


def _parse_condition(raw: Any, rule_key: str) -> Condition:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Rule '{rule_key}' has a condition that is not an object.")
    op = str(raw.get("op") or "").strip().lower()
    name = str(raw.get("field") or "").strip()
    condition_cls = CONDITIONS.get(op)
    if condition_cls is None:
        raise ValidationError(f"Rule '{rule_key}' uses unsupported comparator '{op}'.")
    if not name:
        raise ValidationError(f"Rule '{rule_key}' has a condition without a field.")
    return condition_cls(field=name, value=raw.get("value"))


def _parse_round(value: Any, rule_key: str) -> int | None:
    if value is None:
        return None
    try:
        places = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Rule '{rule_key}' has a non-integer 'round'.") from exc
    if places < 0:
        raise ValidationError(f"Rule '{rule_key}' has a negative 'round'.")
    return places


def _parse_action(raw: Any, rule_key: str) -> Action:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Rule '{rule_key}' has an action that is not an object.")
    op = str(raw.get("op") or raw.get("type") or "").strip().lower()
    if op == "exclude":
        comment = raw.get("comment") or raw.get("reason") or raw.get("exclude_comment")
        return Exclude(comment=str(comment) if comment else None)

    name = str(raw.get("field") or "").strip()
    if not name:
        raise ValidationError(f"Rule '{rule_key}' has a '{op}' action without a field.")
    if op == "set":
        return SetField(field=name, value=raw.get("value"))
    if op == "copy":
        source = raw.get("from") or raw.get("source") or raw.get("valueField")
        if not source:
            raise ValidationError(f"Rule '{rule_key}' has a copy action without a source field.")
        return CopyField(field=name, source=str(source).strip())
    if op in Arithmetic.OPS:
        value_field = raw.get("valueField") or raw.get("value_field")
        return Arithmetic(
            op=op,
            field=name,
            value=raw.get("value"),
            value_field=str(value_field).strip() if value_field else None,
            round=_parse_round(raw.get("round"), rule_key),
        )
    raise ValidationError(f"Rule '{rule_key}' uses unsupported action '{op}'.")


def _parse_scope(raw: Mapping[str, Any]) -> RuleScope:
    token = str(raw.get("scope") or RuleScope.ROW.value).strip().lower().replace("-", "_")
    try:
        return RuleScope(token)
    except ValueError as exc:
        raise ValidationError(f"Unsupported rule scope '{raw.get('scope')}'.") from exc


def rule_key_for(raw: Mapping[str, Any]) -> str:
    return str(raw.get("id") or raw.get("label") or "rule")


def parse_rule(raw: Any) -> Rule:
    if isinstance(raw, Rule):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError("Each rule must be an object.")
    key = rule_key_for(raw)
    when = raw.get("when") or []
    then = raw.get("then") or []
    if not isinstance(when, Sequence) or isinstance(when, str):
        raise ValidationError(f"Rule '{key}' must declare 'when' as a list.")
    if not isinstance(then, Sequence) or isinstance(then, str):
        raise ValidationError(f"Rule '{key}' must declare 'then' as a list.")
    return Rule(
        key=key,
        conditions=tuple(_parse_condition(item, key) for item in when),
        actions=tuple(_parse_action(item, key) for item in then),
        enabled=raw.get("enabled") is not False,
        scope=_parse_scope(raw),
        label=str(raw["label"]) if raw.get("label") else None,
        definition=dict(raw),
    )


def ensure_unique_rule_keys(rules: Iterable[Rule]) -> None:
    """Raise when two rules share a key; each key fires at most once per row."""

    seen: set[str] = set()
    for rule in rules:
        if rule.key in seen:
            raise ValidationError(
                f"Duplicate rule key '{rule.key}'; give each rule a distinct 'id' or 'label'."
            )
        seen.add(rule.key)


def parse_rules(raw_rules: Iterable[Any]) -> list[Rule]:
    rules = [parse_rule(item) for item in raw_rules or ()]
    ensure_unique_rule_keys(rules)
    return rules


def validate_cross_row_rule(raw: Mapping[str, Any]) -> None:
    """Reject cross-row rules whose target could touch every row."""

    target = raw.get("target") if isinstance(raw.get("target"), Mapping) else {}
    match = target.get("match") if isinstance(target.get("match"), list) else []
    if match:
        return
    where = target.get("where") if isinstance(target.get("where"), list) else []
    if any(isinstance(item, Mapping) and item.get("op") in ("eq", "in") for item in where):
        return
    raise ValidationError(CROSS_ROW_SCOPE_ERROR)


@dataclass
class RuleStats:
    rules_tried: int = 0
    rows_affected: int = 0
    actions: int = 0
    cross_row_deferred: int = 0

    def merge(self, other: "RuleStats") -> None:
        self.rows_affected += other.rows_affected
        self.actions += other.actions

    def as_dict(self) -> dict[str, int]:
        return {
            "rulesTried": self.rules_tried,
            "rowsAffected": self.rows_affected,
            "actions": self.actions,
            "crossRowDeferred": self.cross_row_deferred,
        }


@dataclass
class RuleResult:
    rows: list[CanonicalRow]
    stats: RuleStats


def apply_rules(rows: Iterable[CanonicalRow], rules: Iterable[Any]) -> RuleResult:
    """
    Apply enabled row rules to ``rows`` in declaration order.

    A rule fires at most once per row: its key is recorded in
    ``row.applied_rules`` and skipped on later passes, so re-applying the same
    ruleset is a no-op. Conditions see values written by earlier rules.
    """

    parsed = parse_rules(rules)
    row_rules = [rule for rule in parsed if rule.enabled and rule.scope is RuleScope.ROW]
    stats = RuleStats(
        rules_tried=len(row_rules),
        cross_row_deferred=sum(1 for rule in parsed if rule.enabled and rule.scope is RuleScope.CROSS_ROW),
    )
    result_rows = list(rows)
    if not row_rules:
        return RuleResult(rows=result_rows, stats=stats)

    for row in result_rows:
        touched = False
        for rule in row_rules:
            if rule.key in row.applied_rules or not rule.matches(row):
                continue
            for action in rule.actions:
                action.apply(row)
                stats.actions += 1
                touched = True
            row.mark_applied(rule.key)
        if touched:
            stats.rows_affected += 1
    return RuleResult(rows=result_rows, stats=stats)


class RulesetService:
    """Per-run rule storage. Ruleset rows win over rules embedded in the column map."""

    def __init__(self, tx: TenantTransaction) -> None:
        self.tx = tx
        self.session = tx.session
        self.runs = ImportRunService(tx)

    def _query(self, run_id: int):
        return self.session.query(RulesetRule).filter(
            RulesetRule.tenant_id == self.tx.tenant_id, RulesetRule.run_id == run_id
        )

    def save_rules(self, run_id: int, rules: Sequence[Mapping[str, Any]]) -> list[RulesetRule]:
        self.runs.get_run(run_id)
        if not isinstance(rules, Sequence) or isinstance(rules, str):
            raise ValidationError("Rules must be a list.", run_id=run_id)

        parsed = [parse_rule(raw) for raw in rules]
        ensure_unique_rule_keys(parsed)

        records: list[RulesetRule] = []
        for position, (raw, rule) in enumerate(zip(rules, parsed)):
            if rule.scope is RuleScope.CROSS_ROW:
                validate_cross_row_rule(raw)
            records.append(
                RulesetRule(
                    tenant_id=self.tx.tenant_id,
                    run_id=run_id,
                    scope=rule.scope,
                    position=position,
                    rule_key=rule.key,
                    enabled=rule.enabled,
                    definition=dict(raw),
                )
            )

        self._query(run_id).delete(synchronize_session="fetch")
        self.session.add_all(records)
        self.tx.flush()
        return records

    def get_rules(self, run_id: int, *, scope: RuleScope | None = RuleScope.ROW) -> list[dict[str, Any]]:
        query = self._query(run_id)
        if scope is not None:
            query = query.filter(RulesetRule.scope == scope)
        stored = query.order_by(RulesetRule.position, RulesetRule.id).all()
        if stored:
            return [dict(record.definition) for record in stored]
        if self._query(run_id).first() is not None:
            return []

        column_map = (
            self.session.query(ColumnMap)
            .filter(ColumnMap.tenant_id == self.tx.tenant_id, ColumnMap.run_id == run_id)
            .one_or_none()
        )
        embedded = [dict(rule) for rule in (column_map.row_rules if column_map else None) or []]
        if scope is None:
            return embedded
        return [rule for rule in embedded if _parse_scope(rule) is scope]
