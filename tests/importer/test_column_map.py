from __future__ import annotations

import pytest

from ptrs_app.errors import ValidationError
from ptrs_app.importer.mapping import MappingLoadError, load_column_map_file, spec_from_payload
from ptrs_app.importer.pipeline import ColumnMapResolver, ColumnMapService, ImportRunService
from ptrs_app.models.importer.schema import ImportRunStatus


def _resolver(**payload) -> ColumnMapResolver:
    return ColumnMapResolver(spec_from_payload(payload))


def test_explicit_mapping_beats_fallback_and_identity():
    resolver = _resolver(
        mappings={"Supplier": "payeeEntityName"},
        fallbacks={"payee_entity_name": ["Vendor Name"]},
    )
    source = {"Supplier": "Widgets Co", "vendor name": "Bolts Ltd", "payee_entity_name": "Identity Co"}

    resolution = resolver.resolve(source, "payee_entity_name")

    assert resolution.origin == "explicit"
    assert resolution.value == "Widgets Co"
    assert resolution.source == "Supplier"


def test_blank_explicit_value_falls_through_to_fallback():
    resolver = _resolver(
        mappings={"Supplier": "payeeEntityName"},
        fallbacks={"payee_entity_name": ["Vendor Name"]},
    )

    resolution = resolver.resolve({"Supplier": "  ", "vendor name": "Bolts Ltd"}, "payee_entity_name")

    assert resolution.origin == "fallback"
    assert resolution.value == "Bolts Ltd"
    assert resolution.source == "vendor name"


def test_identity_then_default_then_unresolved():
    resolver = _resolver(defaults={"isSmallBusiness": "no"})
    source = {"Payee Entity Name": "Identity Co", "is_small_business": ""}

    identity = resolver.resolve(source, "payee_entity_name")
    default = resolver.resolve(source, "is_small_business")
    missing = resolver.resolve(source, "supply_date")

    assert (identity.origin, identity.value) == ("identity", "Identity Co")
    assert (default.origin, default.value) == ("default", "no")
    assert missing.resolved is False
    assert missing.value is None


def test_resolver_targets_include_custom_fields():
    resolver = _resolver(mappings={"Cost Centre": "costCentre"}, custom_fields=["Region"])

    assert "payment_amount" in resolver.targets
    assert resolver.targets[-2:] == ("cost_centre", "region")


def test_spec_rejects_unsupported_mapping_type():
    with pytest.raises(ValidationError):
        spec_from_payload({"mappings": {"Amount": {"field": "paymentAmount", "type": "currency"}}})


def test_spec_rejects_join_without_main_role():
    with pytest.raises(ValidationError):
        spec_from_payload(
            {"joins": {"conditions": [{"from": {"role": "a", "column": "x"}, "to": {"role": "b", "column": "y"}}]}}
        )


def test_save_map_moves_run_to_mapped_and_keeps_omitted_sections(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        ColumnMapService(tx).save_map(
            run_id,
            mappings={"Payee": "payeeEntityName"},
            defaults={"isSmallBusiness": True},
            joins={"conditions": [{"from": {"role": "main", "column": "Supplier ID"}, "to": {"role": "vendors", "column": "ID"}}]},
        )

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        service = ColumnMapService(tx)
        service.save_map(run_id, mappings={"Supplier": "payeeEntityName"}, joins=[])
        spec = service.get_spec(run_id)
        run = ImportRunService(tx).get_run(run_id)

        assert run.status == ImportRunStatus.MAPPED
        assert [(entry.source, entry.field) for entry in spec.mappings] == [("Supplier", "payee_entity_name")]
        assert spec.defaults == {"is_small_business": True}
        assert len(spec.joins) == 1
        assert spec.joins[0].other_role == "vendors"


def test_save_map_clears_joins_with_empty_conditions(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        service = ColumnMapService(tx)
        service.save_map(
            run_id,
            mappings={"Payee": "payeeEntityName"},
            joins={"conditions": [{"from": {"role": "main", "column": "A"}, "to": {"role": "vendors", "column": "B"}}]},
        )
        service.save_map(run_id, joins={"conditions": []})
        assert service.get_spec(run_id).joins == ()


def test_save_map_is_idempotent(tenant, tenant_context, run_factory):
    run_id = run_factory()
    payload = {"mappings": {"Payee": "payeeEntityName", "Amount": {"field": "paymentAmount", "type": "money"}}}

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        service = ColumnMapService(tx)
        first = service.save_map(run_id, **payload)
        checksum = service.get_spec(run_id).checksum()
        second = service.save_map(run_id, **payload)

        assert first.id == second.id
        assert service.get_spec(run_id).checksum() == checksum


def test_save_field_map_replaces_entries_and_validates(tenant, tenant_context, run_factory):
    run_id = run_factory()

    with tenant_context.begin_tenant_transaction(tenant.id) as tx:
        service = ColumnMapService(tx)
        service.save_field_map(
            run_id,
            [
                {"canonical_field": "paymentAmount", "source_column": "Gross", "transform_type": "abs"},
                {"canonical_field": "payee_entity_abn", "source_role": "Vendors", "source_column": "ABN"},
            ],
        )
        service.save_field_map(run_id, [{"canonical_field": "payment_date", "source_column": "Paid"}])
        entries = service.get_field_map(run_id)

        assert [(entry.canonical_field, entry.source_role, entry.source_column) for entry in entries] == [
            ("payment_date", "main", "Paid")
        ]

    with pytest.raises(ValidationError):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            ColumnMapService(tx).save_field_map(run_id, [{"canonical_field": "not_a_field"}])

    with pytest.raises(ValidationError):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            ColumnMapService(tx).save_field_map(
                run_id, [{"canonical_field": "payment_amount", "transform_type": "uppercase"}]
            )


def test_load_column_map_file_reads_yaml(tmp_path):
    map_file = tmp_path / "map.yaml"
    map_file.write_text(
        "version: 1\n"
        "mappings:\n"
        "  Payer: payerEntityName\n"
        "  Paid On:\n"
        "    field: paymentDate\n"
        "    type: date\n"
        "    format: '%d-%m-%Y'\n"
        "fallbacks:\n"
        "  payeeEntityName: [Supplier, Vendor]\n"
        "custom_fields: [Cost Centre]\n",
        encoding="utf-8",
    )

    spec = load_column_map_file(map_file)

    assert [entry.field for entry in spec.mappings] == ["payer_entity_name", "payment_date"]
    assert spec.mappings[1].format == "%d-%m-%Y"
    assert spec.fallbacks == {"payee_entity_name": ("Supplier", "Vendor")}
    assert spec.custom_fields == ("cost_centre",)


def test_load_column_map_file_rejects_unknown_version(tmp_path):
    map_file = tmp_path / "map.yaml"
    map_file.write_text("version: 2\nmappings: {}\n", encoding="utf-8")

    with pytest.raises(MappingLoadError):
        load_column_map_file(map_file)
