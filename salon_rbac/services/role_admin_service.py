from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from salon_rbac.domain.conditions import ConditionValue, validate_conditions
from salon_rbac.domain.errors import (
    AlreadyGrantedError,
    NotFoundError,
    NotGrantedError,
    PrivilegeEscalationError,
    TenantMismatchError,
)
from salon_rbac.domain.grants import as_utc, is_expired
from salon_rbac.domain.models import (
    AuditAction,
    Role,
    User,
    UserPermission,
    UserRole,
    now_utc,
)
from salon_rbac.infra.audit import ENTITY_USER_PERMISSION, ENTITY_USER_ROLE, build_audit_entry
from salon_rbac.infra.store import AuthzStore

logger = logging.getLogger(__name__)


class RoleAdminService:
    """Mutations of role assignments and direct grants.

    Every mutation runs in one store transaction together with exactly one
    audit row. If either write fails, neither is committed.
    """

    def __init__(
        self,
        store: AuthzStore | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store or AuthzStore()
        self._clock = clock

    def _require_user(self, session: Session, user_id: str) -> User:
        user = self._store.get_user(session, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _check_expiry(self, expires_at: datetime | None) -> datetime | None:
        if expires_at is None:
            return None
        expires_at = as_utc(expires_at)
        if expires_at <= as_utc(self._clock()):
            raise ValueError("expires_at must be in the future")
        return expires_at

    def _actor_max_level(self, session: Session, actor: User) -> tuple[int, bool]:
        principal = self._store.get_principal(session, actor.id)
        if principal is None or not principal.is_active:
            raise PrivilegeEscalationError("acting user is inactive")
        now = self._clock()
        roles = [
            item.role
            for item in self._store.list_role_assignments(session, principal)
            if item.is_active_at(now)
        ]
        is_super_admin = any(item.is_super_admin for item in roles)
        return max((item.level for item in roles), default=0), is_super_admin

    def _check_actor(self, session: Session, actor_id: str | None, target: User, role: Role | None = None) -> None:
        if actor_id is None:
            return
        actor = self._store.get_user(session, actor_id)
        if actor is None:
            raise NotFoundError("acting user not found")
        actor_level, actor_is_super_admin = self._actor_max_level(session, actor)
        if actor_is_super_admin:
            return
        if actor.tenant_id != target.tenant_id:
            raise TenantMismatchError("actor and target user belong to different tenants")
        if role is not None and role.level > actor_level:
            raise PrivilegeEscalationError("cannot assign a role above the actor's own level")

    def _commit_guarded(
        self,
        work: Callable[[Session], Any],
        target_exists: Callable[[Session], bool],
        conflict_message: str,
    ) -> Any:
        try:
            with self._store.transaction() as session:
                return work(session)
        except IntegrityError as exc:
            # Both sides still present means a concurrent writer inserted the pair first.
            with self._store.reader() as session:
                present = target_exists(session)
            if not present:
                raise NotFoundError("user or grant target no longer exists") from exc
            raise AlreadyGrantedError(conflict_message) from exc

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        granted_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> UserRole:
        expires_at = self._check_expiry(expires_at)

        def _work(session: Session) -> UserRole:
            user = self._require_user(session, user_id)
            role = self._store.get_role(session, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.tenant_id is not None and role.tenant_id != user.tenant_id:
                raise TenantMismatchError("role belongs to a different tenant")
            self._check_actor(session, granted_by, user, role)

            replaced_expired = False
            existing = self._store.get_role_assignment(session, user_id, role_id)
            if existing is not None:
                if not is_expired(existing.expires_at, self._clock()):
                    raise AlreadyGrantedError("user already has this role")
                self._store.delete_role_assignment(session, existing)
                replaced_expired = True

            link = self._store.insert_role_assignment(
                session,
                UserRole(
                    user_id=user_id,
                    role_id=role_id,
                    tenant_id=user.tenant_id,
                    granted_by=granted_by,
                    granted_at=self._clock(),
                    expires_at=expires_at,
                ),
            )
            self._store.append_audit_log(
                session,
                build_audit_entry(
                    tenant_id=user.tenant_id,
                    actor_id=granted_by,
                    action=AuditAction.ASSIGN_ROLE,
                    entity_type=ENTITY_USER_ROLE,
                    entity_id=user_id,
                    detail={
                        "metadata": {
                            "role_id": role_id,
                            "role_name": role.name,
                            "expires_at": expires_at.isoformat() if expires_at else None,
                            "replaced_expired": replaced_expired,
                        }
                    },
                ),
            )
            return link

        def _pair_exists(session: Session) -> bool:
            return (
                self._store.get_user(session, user_id) is not None
                and self._store.get_role(session, role_id) is not None
            )

        link = self._commit_guarded(_work, _pair_exists, "user already has this role")
        logger.info("role %s assigned to user %s by %s", role_id, user_id, granted_by)
        return link

    def remove_role(self, user_id: str, role_id: str, *, removed_by: str | None = None) -> None:
        with self._store.transaction() as session:
            user = self._require_user(session, user_id)
            role = self._store.get_role(session, role_id)
            if role is None:
                raise NotFoundError("role not found")
            self._check_actor(session, removed_by, user, role)
            existing = self._store.get_role_assignment(session, user_id, role_id)
            if existing is None:
                raise NotGrantedError("user does not have this role")
            self._store.delete_role_assignment(session, existing)
            self._store.append_audit_log(
                session,
                build_audit_entry(
                    tenant_id=user.tenant_id,
                    actor_id=removed_by,
                    action=AuditAction.REMOVE_ROLE,
                    entity_type=ENTITY_USER_ROLE,
                    entity_id=user_id,
                    detail={"metadata": {"role_id": role_id, "role_name": role.name}},
                ),
            )
        logger.info("role %s removed from user %s by %s", role_id, user_id, removed_by)

    def grant_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted_by: str | None = None,
        expires_at: datetime | None = None,
        conditions: Mapping[str, ConditionValue] | None = None,
    ) -> UserPermission:
        expires_at = self._check_expiry(expires_at)
        normalized_conditions = validate_conditions(conditions)

        def _work(session: Session) -> UserPermission:
            user = self._require_user(session, user_id)
            permission = self._store.get_permission(session, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            self._check_actor(session, granted_by, user)

            replaced_expired = False
            existing = self._store.get_direct_grant(session, user_id, permission_id)
            if existing is not None:
                if not is_expired(existing.expires_at, self._clock()):
                    raise AlreadyGrantedError("user already has this permission")
                self._store.delete_direct_grant(session, existing)
                replaced_expired = True

            link = self._store.insert_direct_grant(
                session,
                UserPermission(
                    user_id=user_id,
                    permission_id=permission_id,
                    tenant_id=user.tenant_id,
                    conditions=normalized_conditions,
                    granted_by=granted_by,
                    granted_at=self._clock(),
                    expires_at=expires_at,
                ),
            )
            self._store.append_audit_log(
                session,
                build_audit_entry(
                    tenant_id=user.tenant_id,
                    actor_id=granted_by,
                    action=AuditAction.GRANT_PERMISSION,
                    entity_type=ENTITY_USER_PERMISSION,
                    entity_id=user_id,
                    detail={
                        "metadata": {
                            "permission_id": permission_id,
                            "resource": permission.resource,
                            "action": permission.action.value,
                            "conditions": normalized_conditions,
                            "expires_at": expires_at.isoformat() if expires_at else None,
                            "replaced_expired": replaced_expired,
                        }
                    },
                ),
            )
            return link

        def _pair_exists(session: Session) -> bool:
            return (
                self._store.get_user(session, user_id) is not None
                and self._store.get_permission(session, permission_id) is not None
            )

        link = self._commit_guarded(_work, _pair_exists, "user already has this permission")
        logger.info("permission %s granted to user %s by %s", permission_id, user_id, granted_by)
        return link

    def revoke_permission(self, user_id: str, permission_id: str, *, revoked_by: str | None = None) -> None:
        with self._store.transaction() as session:
            user = self._require_user(session, user_id)
            permission = self._store.get_permission(session, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            self._check_actor(session, revoked_by, user)
            existing = self._store.get_direct_grant(session, user_id, permission_id)
            if existing is None:
                raise NotGrantedError("user does not have this permission")
            self._store.delete_direct_grant(session, existing)
            self._store.append_audit_log(
                session,
                build_audit_entry(
                    tenant_id=user.tenant_id,
                    actor_id=revoked_by,
                    action=AuditAction.REVOKE_PERMISSION,
                    entity_type=ENTITY_USER_PERMISSION,
                    entity_id=user_id,
                    detail={
                        "metadata": {
                            "permission_id": permission_id,
                            "resource": permission.resource,
                            "action": permission.action.value,
                        }
                    },
                ),
            )
        logger.info("permission %s revoked from user %s by %s", permission_id, user_id, revoked_by)

    def purge_expired_grants(self, now: datetime | None = None) -> dict[str, int]:
        cutoff = as_utc(now or self._clock())
        with self._store.transaction() as session:
            counts = self._store.delete_expired(session, cutoff)
        logger.info(
            "purged expired grants role_assignments=%s direct_grants=%s",
            counts["role_assignments"],
            counts["direct_grants"],
        )
        return counts
