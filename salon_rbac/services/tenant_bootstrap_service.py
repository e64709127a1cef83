from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from salon_rbac.domain.errors import NotFoundError
from salon_rbac.domain.models import Permission, Role, Tenant
from salon_rbac.domain.permissions import (
    DEFAULT_PERMISSIONS,
    ROLE_HIERARCHY,
    ROLE_TEMPLATES,
    Action,
    RoleKey,
)
from salon_rbac.infra.store import AuthzStore

logger = logging.getLogger(__name__)


class TenantBootstrapService:
    """Seeds the permission catalog and the default roles of a tenant.

    Safe to re-run: catalog rows are keyed by ``(resource, action)``, roles by
    ``(tenant_id, name)`` and links by ``(role_id, permission_id)``. Existing
    rows are never reset, so operator changes to a role survive re-runs.
    """

    def __init__(self, store: AuthzStore | None = None) -> None:
        self._store = store or AuthzStore()

    def _ensure_catalog(self, session: Session) -> dict[tuple[str, Action], Permission]:
        catalog: dict[tuple[str, Action], Permission] = {}
        created = 0
        for resource, action in DEFAULT_PERMISSIONS:
            permission, was_created = self._store.upsert_permission(session, resource.value, action)
            catalog[(resource.value, action)] = permission
            created += int(was_created)
        if created:
            logger.info("permission catalog extended by %s entries", created)
        return catalog

    def ensure_super_admin_role(self, session: Session) -> Role:
        role, created = self._store.upsert_role(
            session,
            None,
            RoleKey.SUPER_ADMIN.value,
            "Platform super administrator across all tenants",
            level=ROLE_HIERARCHY[RoleKey.SUPER_ADMIN],
            system_key=RoleKey.SUPER_ADMIN,
        )
        if created:
            logger.info("global SUPER_ADMIN role created id=%s", role.id)
        return role

    def initialize_tenant_roles(self, tenant_id: str) -> dict[str, str]:
        try:
            return self._initialize(tenant_id)
        except IntegrityError:
            # A concurrent bootstrap committed the same rows first.
            logger.info("tenant bootstrap raced for tenant %s, retrying", tenant_id)
            return self._initialize(tenant_id)

    def _initialize(self, tenant_id: str) -> dict[str, str]:
        role_ids: dict[str, str] = {}
        with self._store.transaction() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")

            catalog = self._ensure_catalog(session)
            super_admin = self.ensure_super_admin_role(session)
            role_ids[super_admin.name] = super_admin.id

            links_created = 0
            for template in ROLE_TEMPLATES:
                key: RoleKey = template["key"]
                role, _ = self._store.upsert_role(
                    session,
                    tenant_id,
                    key.value,
                    str(template["description"]),
                    level=ROLE_HIERARCHY[key],
                    system_key=key,
                )
                role_ids[role.name] = role.id
                for resource, action in template["permissions"]:
                    permission = catalog[(resource.value, action)]
                    links_created += int(self._store.link_role_permission(session, role.id, permission.id))

        logger.info(
            "tenant %s roles initialised roles=%s new_links=%s",
            tenant_id,
            len(role_ids),
            links_created,
        )
        return role_ids
