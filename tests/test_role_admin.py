from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from salon_rbac.domain.errors import (
    AlreadyGrantedError,
    NotFoundError,
    NotGrantedError,
    PrivilegeEscalationError,
    TenantMismatchError,
)
from salon_rbac.domain.models import (
    AuditAction,
    AuditLog,
    Role,
    TenantCreate,
    UserCreate,
    UserPermission,
    UserRole,
    UserUpdate,
    now_utc,
)
from salon_rbac.domain.permissions import Action, Resource, RoleKey
from salon_rbac.infra import db, maintenance
from salon_rbac.infra.store import AuthzStore
from salon_rbac.services.authorization_service import AuthorizationService
from salon_rbac.services.identity_service import IdentityService
from salon_rbac.services.role_admin_service import RoleAdminService
from salon_rbac.services.tenant_bootstrap_service import TenantBootstrapService


@pytest.fixture()
def admin_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "role_admin_test.db"
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


def _tenant(name: str) -> tuple[str, dict[str, str]]:
    tenant = IdentityService().create_tenant(TenantCreate(name=name))
    return tenant.id, TenantBootstrapService().initialize_tenant_roles(tenant.id)


def _user(tenant_id: str, username: str) -> str:
    return IdentityService().create_user(tenant_id, UserCreate(username=username, password="pw")).id


def _permission_id(resource: Resource, action: Action) -> str:
    store = AuthzStore()
    with store.reader() as session:
        permission = store.find_permission(session, resource.value, action)
        assert permission is not None
        return permission.id


def _audit_rows(engine: Engine, entity_id: str, action: AuditAction | None = None) -> list[AuditLog]:
    with Session(engine, expire_on_commit=False) as session:
        statement = select(AuditLog).where(AuditLog.entity_id == entity_id)
        if action is not None:
            statement = statement.where(AuditLog.action == action)
        return sorted(session.exec(statement).all(), key=lambda item: item.ts)


def _count(engine: Engine, model: type[UserRole] | type[UserPermission], user_id: str) -> int:
    with Session(engine) as session:
        return len(session.exec(select(model).where(model.user_id == user_id)).all())


def test_assign_and_remove_role_are_audited(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("assign-remove")
    admin = _user(tenant_id, "admin")
    stylist = _user(tenant_id, "stylist")
    service = RoleAdminService()
    service.assign_role(admin, roles[RoleKey.TENANT_ADMIN.value])

    link = service.assign_role(stylist, roles[RoleKey.STAFF.value], granted_by=admin)
    assert link.tenant_id == tenant_id
    assert link.granted_by == admin

    with pytest.raises(AlreadyGrantedError):
        service.assign_role(stylist, roles[RoleKey.STAFF.value], granted_by=admin)

    assigned = _audit_rows(admin_engine, stylist, AuditAction.ASSIGN_ROLE)
    assert len(assigned) == 1
    assert assigned[0].actor_id == admin
    assert assigned[0].tenant_id == tenant_id
    assert assigned[0].detail["metadata"]["role_name"] == "STAFF"
    assert assigned[0].detail["metadata"]["replaced_expired"] is False

    service.remove_role(stylist, roles[RoleKey.STAFF.value], removed_by=admin)
    assert _count(admin_engine, UserRole, stylist) == 0
    removed = _audit_rows(admin_engine, stylist, AuditAction.REMOVE_ROLE)
    assert len(removed) == 1
    assert removed[0].entity_type == "UserRole"

    with pytest.raises(NotGrantedError):
        service.remove_role(stylist, roles[RoleKey.STAFF.value], removed_by=admin)
    assert len(_audit_rows(admin_engine, stylist, AuditAction.REMOVE_ROLE)) == 1


def test_unknown_targets_raise_not_found(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("unknowns")
    stylist = _user(tenant_id, "stylist")
    service = RoleAdminService()

    with pytest.raises(NotFoundError):
        service.assign_role("missing-user", roles[RoleKey.STAFF.value])
    with pytest.raises(NotFoundError):
        service.assign_role(stylist, "missing-role")
    with pytest.raises(NotFoundError):
        service.grant_permission(stylist, "missing-permission")
    assert _audit_rows(admin_engine, stylist) == []


def test_cross_tenant_assignments_are_rejected(admin_engine: Engine) -> None:
    tenant_a, roles_a = _tenant("tenant-a")
    tenant_b, roles_b = _tenant("tenant-b")
    user_a = _user(tenant_a, "alice")
    admin_b = _user(tenant_b, "bob")
    service = RoleAdminService()
    service.assign_role(admin_b, roles_b[RoleKey.TENANT_ADMIN.value])

    with pytest.raises(TenantMismatchError):
        service.assign_role(user_a, roles_b[RoleKey.STAFF.value])
    with pytest.raises(TenantMismatchError):
        service.assign_role(user_a, roles_a[RoleKey.STAFF.value], granted_by=admin_b)
    with pytest.raises(TenantMismatchError):
        service.grant_permission(user_a, _permission_id(Resource.REPORTS, Action.READ), granted_by=admin_b)
    assert _count(admin_engine, UserRole, user_a) == 0


def test_super_admin_may_act_across_tenants(admin_engine: Engine) -> None:
    tenant_a, roles_a = _tenant("platform-a")
    tenant_b, _ = _tenant("platform-b")
    operator = _user(tenant_b, "operator")
    target = _user(tenant_a, "target")
    service = RoleAdminService()
    service.assign_role(operator, roles_a[RoleKey.SUPER_ADMIN.value])

    service.assign_role(target, roles_a[RoleKey.TENANT_ADMIN.value], granted_by=operator)
    assert AuthorizationService().authorize(target, Resource.USERS, Action.MANAGE)


def test_actor_cannot_assign_above_own_level(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("escalation")
    stylist = _user(tenant_id, "stylist")
    newcomer = _user(tenant_id, "newcomer")
    service = RoleAdminService()
    service.assign_role(stylist, roles[RoleKey.STAFF.value])

    with pytest.raises(PrivilegeEscalationError):
        service.assign_role(newcomer, roles[RoleKey.TENANT_ADMIN.value], granted_by=stylist)
    with pytest.raises(PrivilegeEscalationError):
        service.assign_role(stylist, roles[RoleKey.BRANCH_MANAGER.value], granted_by=stylist)

    service.assign_role(newcomer, roles[RoleKey.RECEPTIONIST.value], granted_by=stylist)
    service.assign_role(newcomer, roles[RoleKey.STAFF.value], granted_by=stylist)
    assert {role.name for role in AuthorizationService().get_user_roles(newcomer)} == {"RECEPTIONIST", "STAFF"}


def test_unknown_or_inactive_actor_is_rejected(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("actors")
    target = _user(tenant_id, "target")
    former_admin = _user(tenant_id, "former-admin")
    service = RoleAdminService()
    service.assign_role(former_admin, roles[RoleKey.TENANT_ADMIN.value])
    IdentityService().update_user(tenant_id, former_admin, UserUpdate(is_active=False))
    tenants_manage = _permission_id(Resource.TENANTS, Action.MANAGE)

    with pytest.raises(NotFoundError):
        service.assign_role(target, roles[RoleKey.TENANT_ADMIN.value], granted_by="ghost-actor")
    with pytest.raises(NotFoundError):
        service.grant_permission(target, tenants_manage, granted_by="ghost-actor")
    with pytest.raises(PrivilegeEscalationError):
        service.assign_role(target, roles[RoleKey.CUSTOMER.value], granted_by=former_admin)
    with pytest.raises(PrivilegeEscalationError):
        service.grant_permission(target, tenants_manage, granted_by=former_admin)

    assert _count(admin_engine, UserRole, target) == 0
    assert _count(admin_engine, UserPermission, target) == 0
    assert _audit_rows(admin_engine, target) == []


def test_audit_failure_rolls_back_the_mutation(admin_engine: Engine, monkeypatch: pytest.MonkeyPatch) -> None:
    tenant_id, roles = _tenant("audit-failure")
    stylist = _user(tenant_id, "stylist")
    store = AuthzStore()

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise RuntimeError("audit sink unavailable")

    monkeypatch.setattr(store, "append_audit_log", _fail)
    service = RoleAdminService(store)

    with pytest.raises(RuntimeError):
        service.assign_role(stylist, roles[RoleKey.STAFF.value])
    with pytest.raises(RuntimeError):
        service.grant_permission(stylist, _permission_id(Resource.REPORTS, Action.READ))

    assert _count(admin_engine, UserRole, stylist) == 0
    assert _count(admin_engine, UserPermission, stylist) == 0
    assert not AuthorizationService().authorize(stylist, Resource.APPOINTMENTS, Action.READ)


def test_concurrent_duplicate_surfaces_as_already_granted(
    admin_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant_id, roles = _tenant("race")
    stylist = _user(tenant_id, "stylist")
    RoleAdminService().assign_role(stylist, roles[RoleKey.STAFF.value])

    store = AuthzStore()
    # Simulate the losing writer: its existence check ran before the winner committed.
    monkeypatch.setattr(store, "get_role_assignment", lambda *_args: None)
    with pytest.raises(AlreadyGrantedError):
        RoleAdminService(store).assign_role(stylist, roles[RoleKey.STAFF.value])

    assert _count(admin_engine, UserRole, stylist) == 1
    assert len(_audit_rows(admin_engine, stylist, AuditAction.ASSIGN_ROLE)) == 1


def test_target_deleted_mid_write_surfaces_as_not_found(
    admin_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant_id, _ = _tenant("vanishing")
    stylist = _user(tenant_id, "stylist")
    store = AuthzStore()
    # The role is visible to the existence check, then gone before the insert lands.
    lookups = iter([Role(id="retired-role", tenant_id=tenant_id, name="RETIRED", level=10)])
    monkeypatch.setattr(store, "get_role", lambda *_args: next(lookups, None))

    with pytest.raises(NotFoundError):
        RoleAdminService(store).assign_role(stylist, "retired-role")

    assert _count(admin_engine, UserRole, stylist) == 0
    assert _audit_rows(admin_engine, stylist) == []


def test_expired_relationships_can_be_granted_again(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("regrant")
    stylist = _user(tenant_id, "stylist")
    issued_at = now_utc()
    service = RoleAdminService()
    service.assign_role(stylist, roles[RoleKey.STAFF.value], expires_at=issued_at + timedelta(hours=1))
    permission_id = _permission_id(Resource.REPORTS, Action.READ)
    service.grant_permission(stylist, permission_id, expires_at=issued_at + timedelta(hours=1))

    later = RoleAdminService(clock=lambda: issued_at + timedelta(hours=2))
    later.assign_role(stylist, roles[RoleKey.STAFF.value])
    later.grant_permission(stylist, permission_id, conditions={"department": "color"})

    reassigned = _audit_rows(admin_engine, stylist, AuditAction.ASSIGN_ROLE)[-1]
    assert reassigned.detail["metadata"]["replaced_expired"] is True
    regranted = _audit_rows(admin_engine, stylist, AuditAction.GRANT_PERMISSION)[-1]
    assert regranted.detail["metadata"]["conditions"] == {"department": "color"}
    assert regranted.detail["metadata"]["replaced_expired"] is True


def test_past_expiry_and_bad_conditions_are_rejected(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("validation")
    stylist = _user(tenant_id, "stylist")
    service = RoleAdminService()

    with pytest.raises(ValueError):
        service.assign_role(stylist, roles[RoleKey.STAFF.value], expires_at=now_utc() - timedelta(minutes=1))
    with pytest.raises(ValueError):
        service.grant_permission(
            stylist,
            _permission_id(Resource.REPORTS, Action.READ),
            conditions={"branch_id": ["b1", "b2"]},  # type: ignore[dict-item]
        )
    assert _audit_rows(admin_engine, stylist) == []


def test_grant_and_revoke_permission(admin_engine: Engine) -> None:
    tenant_id, _ = _tenant("direct-grants")
    stylist = _user(tenant_id, "stylist")
    permission_id = _permission_id(Resource.INVENTORY, Action.DELETE)
    service = RoleAdminService()
    authz = AuthorizationService()

    service.grant_permission(stylist, permission_id)
    assert authz.authorize(stylist, Resource.INVENTORY, Action.WRITE)
    with pytest.raises(AlreadyGrantedError):
        service.grant_permission(stylist, permission_id)

    service.revoke_permission(stylist, permission_id)
    assert not authz.authorize(stylist, Resource.INVENTORY, Action.READ)
    with pytest.raises(NotGrantedError):
        service.revoke_permission(stylist, permission_id)

    actions = [row.action for row in _audit_rows(admin_engine, stylist)]
    assert actions == [AuditAction.GRANT_PERMISSION, AuditAction.REVOKE_PERMISSION]


def test_purge_expired_grants_keeps_live_rows(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("purge")
    temp = _user(tenant_id, "temp")
    permanent = _user(tenant_id, "permanent")
    issued_at = now_utc()
    service = RoleAdminService()
    service.assign_role(temp, roles[RoleKey.STAFF.value], expires_at=issued_at + timedelta(minutes=5))
    service.grant_permission(
        temp,
        _permission_id(Resource.REPORTS, Action.READ),
        expires_at=issued_at + timedelta(minutes=5),
    )
    service.assign_role(permanent, roles[RoleKey.STAFF.value])

    assert service.purge_expired_grants(issued_at) == {"role_assignments": 0, "direct_grants": 0}
    counts = service.purge_expired_grants(issued_at + timedelta(minutes=10))
    assert counts == {"role_assignments": 1, "direct_grants": 1}
    assert _count(admin_engine, UserRole, temp) == 0
    assert _count(admin_engine, UserPermission, temp) == 0
    assert _count(admin_engine, UserRole, permanent) == 1


def test_maintenance_entrypoint_runs_purge(admin_engine: Engine) -> None:
    tenant_id, roles = _tenant("maintenance")
    stylist = _user(tenant_id, "stylist")
    RoleAdminService().assign_role(stylist, roles[RoleKey.STAFF.value])

    assert maintenance.main(["--log-level", "WARNING"]) == 0
    assert maintenance.purge_expired_grants() == {"role_assignments": 0, "direct_grants": 0}
    assert _count(admin_engine, UserRole, stylist) == 1
