from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from salon_rbac.domain.conditions import matches
from salon_rbac.domain.errors import NotFoundError
from salon_rbac.domain.grants import (
    DirectGrantRecord,
    EffectivePermission,
    EffectivePermissionSet,
    PrincipalRecord,
    RoleAssignmentRecord,
    RoleRecord,
)
from salon_rbac.domain.models import now_utc
from salon_rbac.domain.permissions import (
    CONTEXT_BRANCH_ID,
    CONTEXT_OVERLAY_KEYS,
    CONTEXT_OWNER_ID,
    CONTEXT_TENANT_ID,
    Action,
    Resource,
    permission_label,
)
from salon_rbac.infra.db import AUTHZ_STORE_TIMEOUT_MS
from salon_rbac.infra.store import AuthzStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    reason: str


@dataclass(frozen=True)
class GrantSnapshot:
    """Everything one check reads, loaded in a single store session."""

    principal: PrincipalRecord
    assignments: list[RoleAssignmentRecord] = field(default_factory=list)
    grants: list[DirectGrantRecord] = field(default_factory=list)

    @property
    def is_super_admin(self) -> bool:
        return any(item.role.is_super_admin for item in self.assignments)

    def effective_set(self) -> EffectivePermissionSet:
        if not self.principal.is_active:
            return EffectivePermissionSet()
        role_permissions = [permission for item in self.assignments for permission in item.role.permissions]
        direct_permissions = [item.effective_permission() for item in self.grants]
        return EffectivePermissionSet.merge([*role_permissions, *direct_permissions])


def _allow(reason: str) -> AuthzDecision:
    return AuthzDecision(allowed=True, reason=reason)


def _deny(reason: str) -> AuthzDecision:
    return AuthzDecision(allowed=False, reason=reason)


def _well_formed(context: Any) -> bool:
    # Overlay keys hold identifiers; anything else cannot be compared safely.
    if not isinstance(context, Mapping):
        return False
    return all(context.get(key) is None or isinstance(context.get(key), str) for key in CONTEXT_OVERLAY_KEYS)


class AuthorizationService:
    def __init__(
        self,
        store: AuthzStore | None = None,
        *,
        timeout_ms: int | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store or AuthzStore()
        self._timeout_ms = AUTHZ_STORE_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self._clock = clock

    def _load(self, principal_id: str, timeout_ms: int | None) -> GrantSnapshot | None:
        with self._store.reader(timeout_ms) as session:
            principal = self._store.get_principal(session, principal_id)
            if principal is None:
                return None
            assignments = self._store.list_role_assignments(session, principal)
            grants = self._store.list_direct_grants(session, principal.id)
        now = self._clock()
        return GrantSnapshot(
            principal=principal,
            assignments=[item for item in assignments if item.is_active_at(now)],
            grants=[item for item in grants if item.is_active_at(now)],
        )

    def _require_snapshot(self, principal_id: str) -> GrantSnapshot:
        snapshot = self._load(principal_id, self._timeout_ms)
        if snapshot is None:
            raise NotFoundError("principal not found")
        return snapshot

    def effective_permissions(self, principal_id: str) -> list[EffectivePermission]:
        return list(self._require_snapshot(principal_id).effective_set())

    def get_user_roles(self, principal_id: str) -> list[RoleRecord]:
        snapshot = self._require_snapshot(principal_id)
        roles = [item.role for item in snapshot.assignments]
        return sorted(roles, key=lambda item: (-item.level, item.name))

    def authorize(
        self,
        principal_id: str,
        resource: str,
        action: Action | str,
        context: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> bool:
        return self.evaluate(principal_id, resource, action, context, timeout_ms=timeout_ms).allowed

    def evaluate(
        self,
        principal_id: str,
        resource: str,
        action: Action | str,
        context: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> AuthzDecision:
        decision = self._evaluate(principal_id, resource, action, context, timeout_ms)
        if not decision.allowed:
            logger.info(
                "authorization denied principal=%s resource=%s action=%s reason=%s",
                principal_id,
                resource,
                action,
                decision.reason,
            )
        return decision

    def _evaluate(
        self,
        principal_id: str,
        resource: str,
        action: Action | str,
        context: Mapping[str, Any] | None,
        timeout_ms: int | None,
    ) -> AuthzDecision:
        try:
            required = Action.parse(action)
        except ValueError:
            return _deny(f"unknown action {action!r}")
        if context is not None and not _well_formed(context):
            return _deny("malformed context")

        try:
            snapshot = self._load(principal_id, self._timeout_ms if timeout_ms is None else timeout_ms)
        except SQLAlchemyError as exc:
            logger.warning("authorization store failure principal=%s: %s", principal_id, exc)
            return _deny("authorization store unavailable")
        except ValueError as exc:
            logger.warning("malformed grant data principal=%s: %s", principal_id, exc)
            return _deny("malformed grant data")

        if snapshot is None:
            return _deny("principal not found")
        return self.decide(snapshot, resource, required, context)

    def decide(
        self,
        snapshot: GrantSnapshot,
        resource: str,
        required: Action,
        context: Mapping[str, Any] | None = None,
    ) -> AuthzDecision:
        principal = snapshot.principal
        if not principal.is_active:
            return _deny("principal inactive")
        if snapshot.is_super_admin:
            return _allow("super admin")

        effective = snapshot.effective_set()
        basic = self._basic_check(effective, resource, required, context)
        if context is None or not any(key in context for key in CONTEXT_OVERLAY_KEYS):
            return basic
        return self._apply_context(principal, effective, basic, resource, required, context)

    def _basic_check(
        self,
        effective: EffectivePermissionSet,
        resource: str,
        required: Action,
        context: Mapping[str, Any] | None,
    ) -> AuthzDecision:
        label = permission_label(resource, required)
        candidates = effective.for_resource(resource, required)
        if not candidates:
            return _deny(f"no grant for {label}")
        # Conditions are only enforced when the caller supplies a context.
        if context is None or any(item.unconditional for item in candidates):
            return _allow(f"granted {label}")
        if any(item.applies_to(context) for item in candidates):
            return _allow(f"granted {label} by condition")
        return _deny(f"conditions not satisfied for {label}")

    def _apply_context(
        self,
        principal: PrincipalRecord,
        effective: EffectivePermissionSet,
        basic: AuthzDecision,
        resource: str,
        required: Action,
        context: Mapping[str, Any],
    ) -> AuthzDecision:
        owner_id = context.get(CONTEXT_OWNER_ID)
        if owner_id is not None and owner_id == principal.id:
            return _allow("resource owner")

        if not basic.allowed:
            return basic

        branch_id = context.get(CONTEXT_BRANCH_ID)
        if branch_id is not None and branch_id not in principal.branch_ids:
            pinned = self._branch_pinned(effective, resource, required, branch_id, context)
            manages_branches = effective.for_resource(Resource.BRANCHES, Action.MANAGE)
            if not pinned and not any(item.unconditional for item in manages_branches):
                return _deny(f"branch {branch_id} outside principal affiliation")

        tenant_id = context.get(CONTEXT_TENANT_ID)
        if tenant_id is not None and tenant_id != principal.tenant_id:
            return _deny("cross-tenant access requires SUPER_ADMIN")
        return basic

    def _branch_pinned(
        self,
        effective: EffectivePermissionSet,
        resource: str,
        required: Action,
        branch_id: Any,
        context: Mapping[str, Any],
    ) -> bool:
        # A grant whose own condition names this branch is explicit branch scoping.
        return any(
            conditions.get(CONTEXT_BRANCH_ID) == branch_id and matches(conditions, context)
            for item in effective.for_resource(resource, required)
            for conditions in item.condition_sets
        )
