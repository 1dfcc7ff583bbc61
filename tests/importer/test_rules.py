from __future__ import annotations

from decimal import Decimal

import pytest

from ptrs_app.errors import ValidationError
from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.pipeline import ColumnMapService, RulesetService, apply_rules, parse_rule, validate_cross_row_rule
from ptrs_app.importer.pipeline.rules import CROSS_ROW_SCOPE_ERROR
from ptrs_app.models.importer.schema import RuleScope

STRIP_GST = {
    "id": "strip-gst",
    "label": "Strip GST",
    "when": [{"field": "payment_amount", "op": "gt", "value": "0"}],
    "then": [{"op": "div", "field": "payment_amount", "value": 1.1, "round": 2}],
}


def _row(row_no: int = 1, **values) -> CanonicalRow:
    return CanonicalRow(row_no, values)


def test_rule_fires_once_per_row():
    rows = [_row(payment_amount="110.00")]

    first = apply_rules(rows, [STRIP_GST])
    second = apply_rules(rows, [STRIP_GST])

    assert rows[0]["payment_amount"] == Decimal("100.00")
    assert rows[0].applied_rules == ["strip-gst"]
    assert first.stats.as_dict() == {"rulesTried": 1, "rowsAffected": 1, "actions": 1, "crossRowDeferred": 0}
    assert second.stats.rows_affected == 0


def test_later_rules_see_earlier_writes():
    rules = [
        {"id": "flag-sb", "when": [{"field": "payee_entity_name", "op": "in", "value": "Widgets Co, Bolts Ltd"}],
         "then": [{"op": "set", "field": "is_small_business", "value": "yes"}]},
        {"id": "sb-terms", "when": [{"field": "is_small_business", "op": "eq", "value": True}],
         "then": [{"op": "assign", "field": "payment_term_days", "value": 20}]},
    ]
    rows = [_row(1, payee_entity_name="Widgets Co"), _row(2, payee_entity_name="Large Corp")]

    result = apply_rules(rows, rules)

    assert rows[0]["is_small_business"] is True
    assert rows[0]["payment_term_days"] == 20
    assert rows[1]["is_small_business"] is None
    assert result.stats.rows_affected == 1
    assert result.stats.actions == 2


def test_condition_operators():
    row = _row(payment_amount="50", payee_entity_name="Widgets Co", payment_term_days="30")

    def matches(condition):
        return parse_rule({"id": "condition-check", "when": [condition], "then": []}).matches(row)

    assert matches({"field": "payment_amount", "op": "gte", "value": 50})
    assert matches({"field": "payment_amount", "op": "lt", "value": "50.01"})
    assert not matches({"field": "payment_amount", "op": "lte", "value": "49"})
    assert matches({"field": "payee_entity_name", "op": "neq", "value": "Bolts Ltd"})
    assert matches({"field": "payee_entity_name", "op": "nin", "value": ["Bolts Ltd"]})
    assert matches({"field": "supply_date", "op": "is_null"})
    assert matches({"field": "payment_term_days", "op": "not_null"})
    assert not matches({"field": "description", "op": "gt", "value": "1"})


def test_copy_arithmetic_and_exclude_actions():
    rules = [
        {
            "id": "adjust",
            "then": [
                {"op": "copy", "field": "description", "from": "payee_entity_name"},
                {"op": "add", "field": "payment_amount", "valueField": "payment_term_days"},
                {"op": "mul", "field": "payment_term_days", "value": 2},
                {"op": "sub", "field": "payment_term_days", "value": "5"},
            ],
        },
        {
            "id": "drop-intercompany",
            "when": [{"field": "payee_entity_name", "op": "eq", "value": "Acme Subsidiary"}],
            "then": [{"op": "exclude", "comment": "Intercompany payment"}],
        },
    ]
    row = _row(payee_entity_name="Acme Subsidiary", payment_amount="100.00", payment_term_days="30")

    apply_rules([row], rules)

    assert row["description"] == "Acme Subsidiary"
    assert row["payment_amount"] == Decimal("130.00")
    assert row["payment_term_days"] == 55
    assert row.exclude is True
    assert row["exclude_comment"] == "Intercompany payment"
    assert row.to_payload()["_appliedRules"] == ["adjust", "drop-intercompany"]


def test_division_by_zero_leaves_value():
    row = _row(payment_amount="10")

    apply_rules([row], [{"id": "noop", "then": [{"op": "div", "field": "payment_amount", "value": 0}]}])

    assert row["payment_amount"] == Decimal("10")


def test_disabled_and_cross_row_rules_are_not_applied():
    rules = [
        {"id": "off", "enabled": False, "then": [{"op": "set", "field": "description", "value": "x"}]},
        {
            "id": "split",
            "scope": "cross_row",
            "target": {"match": ["invoice_reference_number"]},
            "then": [{"op": "set", "field": "description", "value": "y"}],
        },
    ]
    row = _row()

    result = apply_rules([row], rules)

    assert row["description"] is None
    assert result.stats.rules_tried == 0
    assert result.stats.cross_row_deferred == 1


@pytest.mark.parametrize(
    "rule",
    [
        {"id": "bad-op", "when": [{"field": "payment_amount", "op": "like", "value": "1"}]},
        {"id": "bad-action", "then": [{"op": "upper", "field": "description"}]},
        {"id": "bad-round", "then": [{"op": "add", "field": "payment_amount", "value": 1, "round": -1}]},
        {"id": "bad-scope", "scope": "global"},
    ],
)
def test_parse_rule_rejects_invalid_rules(rule):
    with pytest.raises(ValidationError):
        parse_rule(rule)


def test_cross_row_rules_need_a_narrow_target():
    validate_cross_row_rule({"target": {"match": ["invoice_reference_number"]}})
    validate_cross_row_rule({"target": {"where": [{"field": "payee_entity_abn", "op": "in", "value": ["1"]}]}})

    with pytest.raises(ValidationError) as excinfo:
        validate_cross_row_rule({"target": {"where": [{"field": "payment_amount", "op": "gt", "value": 0}]}})
    assert excinfo.value.message == CROSS_ROW_SCOPE_ERROR

    with pytest.raises(ValidationError):
        validate_cross_row_rule({})


def test_ruleset_service_replaces_rules_and_filters_scope(tenant, tenant_context, run_factory):
    run_id = run_factory()
    cross_row = {"id": "split", "scope": "cross_row", "target": {"match": ["invoice_reference_number"]}, "then": []}

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        service = RulesetService(tx)
        service.save_rules(run_id, [STRIP_GST, cross_row])
        service.save_rules(run_id, [cross_row, STRIP_GST])

        assert [rule["id"] for rule in service.get_rules(run_id)] == ["strip-gst"]
        assert [rule["id"] for rule in service.get_rules(run_id, scope=None)] == ["split", "strip-gst"]
        assert service.get_rules(run_id, scope=RuleScope.CROSS_ROW)[0]["target"] == {
            "match": ["invoice_reference_number"]
        }


def test_ruleset_service_rejects_broad_cross_row_rule(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with pytest.raises(ValidationError):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            RulesetService(tx).save_rules(run_id, [{"id": "everything", "scope": "cross_row", "then": []}])


def test_ruleset_falls_back_to_rules_embedded_in_column_map(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        ColumnMapService(tx).save_map(run_id, mappings={"Payee": "payeeEntityName"}, row_rules=[STRIP_GST])
        assert [rule["id"] for rule in RulesetService(tx).get_rules(run_id)] == ["strip-gst"]

        RulesetService(tx).save_rules(run_id, [])
        assert [rule["id"] for rule in RulesetService(tx).get_rules(run_id)] == ["strip-gst"]


def test_rules_without_distinct_keys_are_rejected(tenant, tenant_context, run_factory):
    run_id = run_factory()
    unnamed = [
        {"then": [{"op": "set", "field": "description", "value": "first"}]},
        {"then": [{"op": "set", "field": "payment_term_days", "value": 30}]},
    ]

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        with pytest.raises(ValidationError, match="Duplicate rule key 'rule'"):
            RulesetService(tx).save_rules(run_id, unnamed)
        with pytest.raises(ValidationError, match="Duplicate rule key 'strip-gst'"):
            RulesetService(tx).save_rules(run_id, [STRIP_GST, dict(STRIP_GST)])
        with pytest.raises(ValidationError):
            ColumnMapService(tx).save_map(run_id, mappings={"Payee": "payeeEntityName"}, row_rules=unnamed)
        with pytest.raises(ValidationError):
            apply_rules([_row()], unnamed)

        labelled = [dict(rule, label=f"step {index}") for index, rule in enumerate(unnamed)]
        RulesetService(tx).save_rules(run_id, labelled)
        assert [rule["label"] for rule in RulesetService(tx).get_rules(run_id)] == ["step 0", "step 1"]
