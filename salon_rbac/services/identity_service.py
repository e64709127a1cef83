from __future__ import annotations

import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from salon_rbac.domain.errors import AuthError, ConflictError, NotFoundError
from salon_rbac.domain.models import (
    BootstrapAdminRequest,
    Branch,
    BranchCreate,
    Permission,
    Role,
    StaffBranch,
    Tenant,
    TenantCreate,
    User,
    UserCreate,
    UserUpdate,
)
from salon_rbac.domain.permissions import RoleKey
from salon_rbac.infra.auth import hash_password, verify_password
from salon_rbac.infra.store import AuthzStore
from salon_rbac.services.role_admin_service import RoleAdminService
from salon_rbac.services.tenant_bootstrap_service import TenantBootstrapService

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(self, store: AuthzStore | None = None) -> None:
        self._store = store or AuthzStore()

    def _session(self) -> Session:
        return Session(self._store.engine, expire_on_commit=False)

    def _get_scoped_user(self, session: Session, tenant_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.tenant_id == tenant_id).where(User.id == user_id)
        return session.exec(statement).first()

    def _get_scoped_branch(self, session: Session, tenant_id: str, branch_id: str) -> Branch | None:
        statement = select(Branch).where(Branch.tenant_id == tenant_id).where(Branch.id == branch_id)
        return session.exec(statement).first()

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        with self._session() as session:
            tenant = Tenant(name=payload.name)
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
            return tenant

    def create_user(self, tenant_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            user = User(
                tenant_id=tenant_id,
                username=payload.username,
                password_hash=hash_password(payload.password),
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in tenant") from exc
            session.refresh(user)
            return user

    def get_user(self, tenant_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, tenant_id: str, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if payload.password is not None:
                user.password_hash = hash_password(payload.password)
            if payload.is_active is not None and payload.is_active != user.is_active:
                user.is_active = payload.is_active
                logger.info("user %s active=%s", user_id, payload.is_active)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.get(Tenant, payload.tenant_id) is None:
                raise NotFoundError("tenant not found")
            existing = session.exec(select(User.id).where(User.tenant_id == payload.tenant_id)).first()
            if existing is not None:
                raise ConflictError("tenant already initialized")

        role_ids = TenantBootstrapService(self._store).initialize_tenant_roles(payload.tenant_id)
        admin = self.create_user(
            payload.tenant_id,
            UserCreate(username=payload.username, password=payload.password, is_active=True),
        )
        RoleAdminService(self._store).assign_role(admin.id, role_ids[RoleKey.TENANT_ADMIN.value])
        return admin

    def list_roles(self, tenant_id: str) -> list[Role]:
        with self._session() as session:
            roles = session.exec(
                select(Role).where(or_(col(Role.tenant_id) == tenant_id, col(Role.tenant_id).is_(None)))
            ).all()
            return sorted(roles, key=lambda item: (-item.level, item.name))

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            permissions = session.exec(select(Permission)).all()
            return sorted(permissions, key=lambda item: (item.resource, item.action.level))

    def create_branch(self, tenant_id: str, payload: BranchCreate) -> Branch:
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            branch = Branch(
                tenant_id=tenant_id,
                name=payload.name,
                code=payload.code,
                is_active=payload.is_active,
            )
            session.add(branch)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("branch code already exists in tenant") from exc
            session.refresh(branch)
            return branch

    def bind_user_branch(
        self,
        tenant_id: str,
        user_id: str,
        branch_id: str,
        *,
        department: str | None = None,
        is_primary: bool = False,
    ) -> StaffBranch:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            branch = self._get_scoped_branch(session, tenant_id, branch_id)
            if user is None or branch is None:
                raise NotFoundError("user or branch not found")

            link = session.get(StaffBranch, (tenant_id, user_id, branch_id))
            if link is None:
                link = StaffBranch(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    branch_id=branch_id,
                    department=department,
                )
            elif department is not None:
                link.department = department

            if is_primary:
                others = session.exec(
                    select(StaffBranch)
                    .where(StaffBranch.tenant_id == tenant_id)
                    .where(StaffBranch.user_id == user_id)
                    .where(StaffBranch.branch_id != branch_id)
                ).all()
                for item in others:
                    if item.is_primary:
                        item.is_primary = False
                        session.add(item)
                link.is_primary = True

            session.add(link)
            session.commit()
            session.refresh(link)
            return link

    def dev_login(self, tenant_id: str, username: str, password: str) -> User:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if not verify_password(password, user.password_hash):
                raise AuthError("invalid credentials")
            return user
