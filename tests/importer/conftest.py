from __future__ import annotations

import io

import pytest

from ptrs_app.importer.pipeline import ColumnMapService, ImportRunService, RawImportStore, RunDetails

PAYMENTS_CSV = (
    "Payer,Payee,Amount,Date\n"
    "Acme Holdings,Widgets Co,\"$1,100.00\",2024-02-10\n"
    "Acme Holdings,Bolts Ltd,250.50,2024-03-01\n"
    "Acme Holdings,Nuts & Co,(75.00),2024-03-15\n"
)

PAYMENTS_MAPPINGS = {
    "Payer": "payerEntityName",
    "Payee": "payeeEntityName",
    "Amount": "paymentAmount",
    "Date": "paymentDate",
}


def _make_stream(contents: str) -> io.StringIO:
    stream = io.StringIO(contents)
    stream.seek(0)
    return stream


@pytest.fixture
def run_factory(tenant, tenant_context):
    """Create committed reporting runs for the default tenant."""

    def _factory(
        *,
        label: str = "FY24 H1",
        period_start: str | None = "2024-01-01",
        period_end: str | None = "2024-06-30",
        tenant_id: int | None = None,
    ) -> int:
        with tenant_context.begin_tenant_transaction(tenant_id or tenant.id) as tx:
            run = ImportRunService(tx).create_run(
                RunDetails.coerce(
                    label=label,
                    entity_name="Acme Holdings Pty Ltd",
                    abn="51 824 753 556",
                    period_start=period_start,
                    period_end=period_end,
                )
            )
            run_id = run.id
        return run_id

    return _factory


@pytest.fixture
def ingest(tenant, tenant_context):
    def _ingest(run_id: int, contents: str = PAYMENTS_CSV, **options):
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            return RawImportStore(tx).ingest(run_id, _make_stream(contents), **options)

    return _ingest


@pytest.fixture
def save_map(tenant, tenant_context):
    def _save_map(run_id: int, **sections):
        sections.setdefault("mappings", PAYMENTS_MAPPINGS)
        with tenant_context.begin_tenant_transaction(tenant.id) as tx:
            ColumnMapService(tx).save_map(run_id, **sections)

    return _save_map
