import pytest

from ptrs_app.errors import NotFoundError
from ptrs_app.models import Tenant, db
from ptrs_app.tenancy import TenantContext, begin_tenant_transaction


def test_unknown_tenant_is_rejected(tenant_context):
    with pytest.raises(NotFoundError) as excinfo:
        tenant_context.begin_tenant_transaction(404)

    assert excinfo.value.message == "Tenant 404 not found or inactive."


def test_inactive_tenant_is_rejected(tenant, tenant_context):
    tenant.is_active = False
    db.session.commit()

    with pytest.raises(NotFoundError):
        tenant_context.begin_tenant_transaction(tenant.id)


def test_context_manager_commits_on_success(tenant):
    with begin_tenant_transaction(tenant.id) as tx:
        db.session.add(Tenant(name="Beta Pty Ltd", slug="beta"))
        tx.flush()

    db.session.expire_all()
    assert Tenant.query.filter_by(slug="beta").count() == 1


def test_context_manager_rolls_back_on_error(tenant, tenant_context):
    with pytest.raises(RuntimeError):
        with tenant_context.begin_tenant_transaction(tenant.id):
            db.session.add(Tenant(name="Gamma Pty Ltd", slug="gamma"))
            raise RuntimeError("boom")

    assert Tenant.query.filter_by(slug="gamma").count() == 0


def test_manual_rollback_closes_the_scope(tenant, tenant_context):
    tx = tenant_context.begin_tenant_transaction(tenant.id)
    db.session.add(Tenant(name="Delta Pty Ltd", slug="delta"))
    tx.rollback()

    with tx:
        pass

    assert Tenant.query.filter_by(slug="delta").count() == 0


def test_log_extra_prefixes_fields(tenant, tenant_context):
    tx = tenant_context.begin_tenant_transaction(tenant.id)

    assert tx.log_extra(run_id=7, operation="stage") == {
        "importer_tenant_id": tenant.id,
        "importer_run_id": 7,
        "importer_operation": "stage",
    }
    tx.rollback()
