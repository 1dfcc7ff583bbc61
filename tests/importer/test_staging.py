from __future__ import annotations

from ptrs_app.importer.contracts import CanonicalRow
from ptrs_app.importer.pipeline import ColumnMapService, StagingStore
from ptrs_app.importer.pipeline.staging import build_row_meta


def _pairs(count: int, **values):
    rows = []
    for row_no in range(1, count + 1):
        row = CanonicalRow(row_no, {"payee_entity_name": f"Supplier {row_no}", **values})
        rows.append((row, build_row_meta(row, stage="stage", at="2024-04-01T00:00:00+00:00", rules_exclude=False)))
    return rows


def test_persist_replaces_staged_rows(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        store = StagingStore(tx, batch_size=2)
        assert store.persist(run_id, _pairs(5)) == 5
        assert store.persist(run_id, _pairs(2)) == 2
        assert store.count(run_id) == 2
        assert [row_no for row_no, _, _ in store.iter_rows(run_id, chunk_size=1)] == [1, 2]


def test_rolled_back_persist_keeps_previous_rows(tenant, tenant_context, run_factory):
    run_id = run_factory()
    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        StagingStore(tx).persist(run_id, _pairs(3))

    tx = tenant_context.begin_tenant_transaction(tenant.id)
    StagingStore(tx).persist(run_id, _pairs(1))
    tx.rollback()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        assert StagingStore(tx).count(run_id) == 3


def test_preview_headers_follow_field_map_then_payload(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        ColumnMapService(tx).save_field_map(
            run_id,
            [
                {"canonical_field": "payment_date", "source_column": "Paid"},
                {"canonical_field": "payment_amount", "source_column": "Gross"},
            ],
        )
        StagingStore(tx).persist(run_id, _pairs(3, cost_centre="CC-1"))

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        preview = StagingStore(tx).get_preview(run_id, limit=2, offset=1).as_dict()

    assert preview["totalRows"] == 3
    assert [row["rowNo"] for row in preview["rows"]] == [2, 3]
    assert preview["rows"][0]["payee_entity_name"] == "Supplier 2"
    assert preview["headers"][:3] == ["payment_date", "payment_amount", "payer_entity_name"]
    assert preview["headers"][-1] == "cost_centre"
    assert "exclude" not in preview["headers"]
    assert "_appliedRules" not in preview["headers"]


def test_row_meta_records_rule_and_exclusion_outcome():
    row = CanonicalRow(1)
    row.mark_applied("strip-gst")
    row.mark_excluded("Government entity", code="GOV_ENTITY")

    meta = build_row_meta(row, stage="stage", at="now", rules_exclude=False)

    assert meta == {
        "stage": "stage",
        "at": "now",
        "rules": {"applied": ["strip-gst"], "exclude": False},
        "exclusions": ["GOV_ENTITY"],
    }
