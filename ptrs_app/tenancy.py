# ptrs_app/tenancy.py
"""
Explicit tenant-scoped transaction handles.

Every pipeline service receives a :class:`TenantTransaction` instead of
reading an ambient tenant from request state. On PostgreSQL the tenant id is
also pushed into ``app.current_tenant`` so row-level security policies apply.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from ptrs_app.errors import NotFoundError, TransientStorageError
from ptrs_app.models import Tenant, db

logger = logging.getLogger(__name__)


class TenantTransaction:
    """Unit of work bound to one tenant; commit or roll back exactly once per scope."""

    def __init__(self, tenant_id: int, session: Session) -> None:
        self.tenant_id = tenant_id
        self.session = session
        self._closed = False

    def __enter__(self) -> "TenantTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._closed:
            return False
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False

    def _apply_tenant_setting(self) -> None:
        bind = self.session.get_bind()
        if bind.dialect.name != "postgresql":
            return
        self.session.execute(
            text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
            {"tenant_id": str(self.tenant_id)},
        )

    def flush(self) -> None:
        try:
            self.session.flush()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStorageError(
                f"Storage conflict while flushing: {exc.orig}", tenant_id=self.tenant_id
            ) from exc

    def commit(self) -> None:
        try:
            self.session.commit()
        except (OperationalError, DBAPIError) as exc:
            self.session.rollback()
            self._closed = True
            raise TransientStorageError(
                f"Storage conflict while committing: {exc.orig}", tenant_id=self.tenant_id
            ) from exc
        self._closed = True

    def rollback(self) -> None:
        self.session.rollback()
        self._closed = True

    def log_extra(self, **fields: Any) -> dict[str, Any]:
        payload = {"importer_tenant_id": self.tenant_id}
        payload.update({f"importer_{key}": value for key, value in fields.items()})
        return payload


class TenantContext:
    """Factory for tenant-scoped transactions."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session or db.session

    def begin_tenant_transaction(self, tenant_id: int) -> TenantTransaction:
        session = self.session
        tenant = session.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            raise NotFoundError(f"Tenant {tenant_id} not found or inactive.", tenant_id=tenant_id)
        tx = TenantTransaction(tenant_id, session)
        tx._apply_tenant_setting()
        logger.debug("Tenant transaction opened", extra={"importer_tenant_id": tenant_id})
        return tx


def begin_tenant_transaction(tenant_id: int, *, session: Session | None = None) -> TenantTransaction:
    """Shortcut for ``TenantContext(session).begin_tenant_transaction(tenant_id)``."""

    return TenantContext(session).begin_tenant_transaction(tenant_id)
