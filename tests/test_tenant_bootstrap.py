from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from salon_rbac.domain.errors import NotFoundError
from salon_rbac.domain.models import Permission, Role, RolePermission, TenantCreate
from salon_rbac.domain.permissions import ROLE_HIERARCHY, ROLE_TEMPLATES, Action, Resource, RoleKey
from salon_rbac.infra import db
from salon_rbac.services.identity_service import IdentityService
from salon_rbac.services.tenant_bootstrap_service import TenantBootstrapService


@pytest.fixture()
def bootstrap_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "bootstrap_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def _row_counts(engine: Engine) -> tuple[int, int, int]:
    with Session(engine) as session:
        return (
            len(session.exec(select(Permission)).all()),
            len(session.exec(select(Role)).all()),
            len(session.exec(select(RolePermission)).all()),
        )


def test_bootstrap_seeds_catalog_and_default_roles(bootstrap_engine: Engine) -> None:
    tenant = IdentityService().create_tenant(TenantCreate(name="glow"))
    role_ids = TenantBootstrapService().initialize_tenant_roles(tenant.id)

    assert set(role_ids) == {key.value for key in RoleKey}
    permissions, roles, links = _row_counts(bootstrap_engine)
    assert permissions == len(Resource) * len(Action)
    assert roles == len(RoleKey)
    assert links == sum(len(template["permissions"]) for template in ROLE_TEMPLATES)

    with Session(bootstrap_engine) as session:
        super_admin = session.get(Role, role_ids[RoleKey.SUPER_ADMIN.value])
        assert super_admin is not None
        assert super_admin.tenant_id is None
        assert super_admin.system_key == RoleKey.SUPER_ADMIN
        staff = session.get(Role, role_ids[RoleKey.STAFF.value])
        assert staff is not None
        assert staff.tenant_id == tenant.id
        assert staff.level == ROLE_HIERARCHY[RoleKey.STAFF]


def test_bootstrap_is_idempotent(bootstrap_engine: Engine) -> None:
    tenant = IdentityService().create_tenant(TenantCreate(name="idempotent"))
    service = TenantBootstrapService()
    first = service.initialize_tenant_roles(tenant.id)
    counts = _row_counts(bootstrap_engine)

    second = service.initialize_tenant_roles(tenant.id)
    assert second == first
    assert _row_counts(bootstrap_engine) == counts


def test_tenants_share_catalog_and_super_admin(bootstrap_engine: Engine) -> None:
    identity = IdentityService()
    first = TenantBootstrapService().initialize_tenant_roles(identity.create_tenant(TenantCreate(name="one")).id)
    second = TenantBootstrapService().initialize_tenant_roles(identity.create_tenant(TenantCreate(name="two")).id)

    assert first[RoleKey.SUPER_ADMIN.value] == second[RoleKey.SUPER_ADMIN.value]
    assert first[RoleKey.STAFF.value] != second[RoleKey.STAFF.value]
    permissions, roles, _ = _row_counts(bootstrap_engine)
    assert permissions == len(Resource) * len(Action)
    assert roles == 1 + 2 * len(ROLE_TEMPLATES)


def test_bootstrap_keeps_operator_changes(bootstrap_engine: Engine) -> None:
    tenant = IdentityService().create_tenant(TenantCreate(name="customized"))
    role_ids = TenantBootstrapService().initialize_tenant_roles(tenant.id)
    with Session(bootstrap_engine) as session:
        staff = session.get(Role, role_ids[RoleKey.STAFF.value])
        assert staff is not None
        staff.description = "Senior stylists"
        session.add(staff)
        session.commit()

    TenantBootstrapService().initialize_tenant_roles(tenant.id)
    with Session(bootstrap_engine) as session:
        staff = session.get(Role, role_ids[RoleKey.STAFF.value])
        assert staff is not None
        assert staff.description == "Senior stylists"


def test_bootstrap_unknown_tenant(bootstrap_engine: Engine) -> None:
    with pytest.raises(NotFoundError):
        TenantBootstrapService().initialize_tenant_roles("missing-tenant")
    assert _row_counts(bootstrap_engine) == (0, 0, 0)
