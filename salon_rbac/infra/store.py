from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from salon_rbac.domain.conditions import validate_conditions
from salon_rbac.domain.grants import (
    DirectGrantRecord,
    PermissionRecord,
    PrincipalRecord,
    RoleAssignmentRecord,
    RoleRecord,
    as_utc,
)
from salon_rbac.domain.models import (
    AuditLog,
    Permission,
    Role,
    RolePermission,
    StaffBranch,
    User,
    UserPermission,
    UserRole,
)
from salon_rbac.domain.permissions import Action, RoleKey
from salon_rbac.infra.audit import write_audit_log
from salon_rbac.infra.db import apply_statement_timeout, get_engine

logger = logging.getLogger(__name__)


def to_permission_record(permission: Permission) -> PermissionRecord:
    return PermissionRecord(
        id=permission.id,
        resource=permission.resource,
        action=Action.parse(permission.action),
        conditions=validate_conditions(permission.conditions),
    )


def to_role_record(role: Role, permissions: list[Permission] | None = None) -> RoleRecord:
    return RoleRecord(
        id=role.id,
        tenant_id=role.tenant_id,
        name=role.name,
        description=role.description,
        level=role.level,
        system_key=RoleKey(role.system_key) if role.system_key is not None else None,
        permissions=tuple(to_permission_record(item) for item in permissions or []),
    )


class AuthzStore:
    """SQL-backed persistence for the authorization engine.

    Read operations take the session opened by :meth:`reader` so a whole
    check sees one consistent snapshot. Mutations take the session opened by
    :meth:`transaction`, which commits on success and rolls back otherwise.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_engine()

    @contextmanager
    def reader(self, timeout_ms: int | None = None) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            apply_statement_timeout(session, timeout_ms)
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    def get_user(self, session: Session, user_id: str) -> User | None:
        return session.get(User, user_id)

    def get_role(self, session: Session, role_id: str) -> Role | None:
        return session.get(Role, role_id)

    def get_permission(self, session: Session, permission_id: str) -> Permission | None:
        return session.get(Permission, permission_id)

    def find_permission(self, session: Session, resource: str, action: Action) -> Permission | None:
        statement = select(Permission).where(Permission.resource == resource).where(Permission.action == action)
        return session.exec(statement).first()

    def find_role(self, session: Session, tenant_id: str | None, name: str) -> Role | None:
        statement = select(Role).where(Role.name == name)
        if tenant_id is None:
            statement = statement.where(col(Role.tenant_id).is_(None))
        else:
            statement = statement.where(Role.tenant_id == tenant_id)
        return session.exec(statement).first()

    def get_principal(self, session: Session, principal_id: str) -> PrincipalRecord | None:
        user = session.get(User, principal_id)
        if user is None:
            return None
        memberships = list(
            session.exec(
                select(StaffBranch)
                .where(StaffBranch.tenant_id == user.tenant_id)
                .where(StaffBranch.user_id == user.id)
            ).all()
        )
        return PrincipalRecord(
            id=user.id,
            tenant_id=user.tenant_id,
            is_active=user.is_active,
            branch_ids=frozenset(item.branch_id for item in memberships),
            department_ids=frozenset(item.department for item in memberships if item.department),
        )

    def _role_permissions(self, session: Session, role_ids: list[str]) -> dict[str, list[Permission]]:
        by_role: dict[str, list[Permission]] = {role_id: [] for role_id in role_ids}
        if not role_ids:
            return by_role
        rows = session.exec(
            select(RolePermission.role_id, Permission)
            .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
            .where(col(RolePermission.role_id).in_(role_ids))
        ).all()
        for role_id, permission in rows:
            by_role[role_id].append(permission)
        return by_role

    def list_role_assignments(self, session: Session, principal: PrincipalRecord) -> list[RoleAssignmentRecord]:
        # Roles of other tenants never count, even if a stray link exists.
        rows = list(
            session.exec(
                select(UserRole, Role)
                .join(Role, col(Role.id) == col(UserRole.role_id))
                .where(UserRole.user_id == principal.id)
                .where(or_(col(Role.tenant_id) == principal.tenant_id, col(Role.tenant_id).is_(None)))
            ).all()
        )
        permissions = self._role_permissions(session, [role.id for _, role in rows])
        return [
            RoleAssignmentRecord(
                role=to_role_record(role, permissions.get(role.id)),
                granted_by=link.granted_by,
                granted_at=as_utc(link.granted_at),
                expires_at=as_utc(link.expires_at) if link.expires_at is not None else None,
            )
            for link, role in rows
        ]

    def list_direct_grants(self, session: Session, principal_id: str) -> list[DirectGrantRecord]:
        rows = session.exec(
            select(UserPermission, Permission)
            .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
            .where(UserPermission.user_id == principal_id)
        ).all()
        return [
            DirectGrantRecord(
                permission=to_permission_record(permission),
                granted_by=link.granted_by,
                granted_at=as_utc(link.granted_at),
                expires_at=as_utc(link.expires_at) if link.expires_at is not None else None,
                conditions=validate_conditions(link.conditions),
            )
            for link, permission in rows
        ]

    def upsert_permission(
        self,
        session: Session,
        resource: str,
        action: Action,
        description: str | None = None,
    ) -> tuple[Permission, bool]:
        existing = self.find_permission(session, resource, action)
        if existing is not None:
            return existing, False
        permission = Permission(
            resource=resource,
            action=action,
            description=description or f"{action.value} access to {resource}",
        )
        session.add(permission)
        session.flush()
        return permission, True

    def upsert_role(
        self,
        session: Session,
        tenant_id: str | None,
        name: str,
        description: str | None,
        *,
        level: int = 0,
        system_key: RoleKey | None = None,
    ) -> tuple[Role, bool]:
        existing = self.find_role(session, tenant_id, name)
        if existing is not None:
            return existing, False
        role = Role(
            tenant_id=tenant_id,
            name=name,
            description=description,
            level=level,
            system_key=system_key,
        )
        session.add(role)
        session.flush()
        return role, True

    def link_role_permission(self, session: Session, role_id: str, permission_id: str) -> bool:
        if session.get(RolePermission, (role_id, permission_id)) is not None:
            return False
        session.add(RolePermission(role_id=role_id, permission_id=permission_id))
        session.flush()
        return True

    def get_role_assignment(self, session: Session, user_id: str, role_id: str) -> UserRole | None:
        return session.get(UserRole, (user_id, role_id))

    def get_direct_grant(self, session: Session, user_id: str, permission_id: str) -> UserPermission | None:
        return session.get(UserPermission, (user_id, permission_id))

    def insert_role_assignment(self, session: Session, link: UserRole) -> UserRole:
        session.add(link)
        session.flush()
        return link

    def delete_role_assignment(self, session: Session, link: UserRole) -> None:
        session.delete(link)
        session.flush()

    def insert_direct_grant(self, session: Session, link: UserPermission) -> UserPermission:
        session.add(link)
        session.flush()
        return link

    def delete_direct_grant(self, session: Session, link: UserPermission) -> None:
        session.delete(link)
        session.flush()

    def append_audit_log(self, session: Session, entry: AuditLog) -> AuditLog:
        return write_audit_log(session, entry)

    def delete_expired(self, session: Session, now: datetime) -> dict[str, int]:
        expired_roles = [
            item
            for item in session.exec(select(UserRole).where(col(UserRole.expires_at).is_not(None))).all()
            if item.expires_at is not None and as_utc(item.expires_at) <= now
        ]
        expired_grants = [
            item
            for item in session.exec(select(UserPermission).where(col(UserPermission.expires_at).is_not(None))).all()
            if item.expires_at is not None and as_utc(item.expires_at) <= now
        ]
        for item in [*expired_roles, *expired_grants]:
            session.delete(item)
        session.flush()
        return {"role_assignments": len(expired_roles), "direct_grants": len(expired_grants)}
