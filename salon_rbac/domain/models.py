from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from salon_rbac.domain.conditions import ConditionValue, validate_conditions
from salon_rbac.domain.permissions import Action, RoleKey


def now_utc() -> datetime:
    return datetime.now(UTC)


class AuditAction(StrEnum):
    ASSIGN_ROLE = "ASSIGN_ROLE"
    REMOVE_ROLE = "REMOVE_ROLE"
    GRANT_PERMISSION = "GRANT_PERMISSION"
    REVOKE_PERMISSION = "REVOKE_PERMISSION"


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: AuditAction = Field(index=True)
    entity_type: str
    entity_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    username: str = Field(index=True)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Branch(SQLModel, table=True):
    __tablename__ = "branches"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_branches_tenant_code"),
        UniqueConstraint("tenant_id", "id", name="uq_branches_tenant_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    code: str = Field(index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class StaffBranch(SQLModel, table=True):
    __tablename__ = "staff_branches"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "branch_id"],
            ["branches.tenant_id", "branches.id"],
            ondelete="CASCADE",
        ),
        Index("ix_staff_branches_tenant_user", "tenant_id", "user_id"),
    )

    tenant_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    branch_id: str = Field(primary_key=True)
    department: str | None = None
    is_primary: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    resource: str = Field(index=True)
    action: Action
    conditions: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
        Index(
            "uq_roles_global_name",
            "name",
            unique=True,
            postgresql_where=text("tenant_id IS NULL"),
            sqlite_where=text("tenant_id IS NULL"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    # NULL only for the global SUPER_ADMIN role.
    tenant_id: str | None = Field(default=None, foreign_key="tenants.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    level: int = Field(default=0)
    system_key: RoleKey | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True, ondelete="CASCADE")
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (Index("ix_user_roles_tenant_user", "tenant_id", "user_id"),)

    user_id: str = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    role_id: str = Field(foreign_key="roles.id", primary_key=True, ondelete="CASCADE")
    tenant_id: str = Field(index=True)
    granted_by: str | None = Field(default=None, index=True)
    granted_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime | None = Field(default=None, index=True)


class UserPermission(SQLModel, table=True):
    __tablename__ = "user_permissions"
    __table_args__ = (Index("ix_user_permissions_tenant_user", "tenant_id", "user_id"),)

    user_id: str = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True, ondelete="CASCADE")
    tenant_id: str = Field(index=True)
    conditions: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    granted_by: str | None = Field(default=None, index=True)
    granted_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime | None = Field(default=None, index=True)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str


class TenantRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class UserCreate(BaseModel):
    username: str
    password: str
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    username: str
    is_active: bool
    created_at: datetime


class BranchCreate(BaseModel):
    name: str
    code: str
    is_active: bool = True


class BranchRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    code: str
    is_active: bool
    created_at: datetime


class StaffBranchBindRequest(BaseModel):
    department: str | None = None
    is_primary: bool = False


class StaffBranchRead(ORMReadModel):
    tenant_id: str
    user_id: str
    branch_id: str
    department: str | None = None
    is_primary: bool


class RoleRead(ORMReadModel):
    id: str
    tenant_id: str | None = None
    name: str
    description: str | None = None
    level: int
    system_key: RoleKey | None = None


class PermissionRead(ORMReadModel):
    id: str
    resource: str
    action: Action
    conditions: dict[str, Any] | None = None
    description: str | None = None


class EffectivePermissionRead(BaseModel):
    id: str
    resource: str
    action: Action
    conditions: list[dict[str, ConditionValue]] = PydanticField(default_factory=list)


class UserRoleGrantRead(BaseModel):
    id: str
    tenant_id: str | None = None
    name: str
    description: str | None = None
    level: int
    permissions: list[PermissionRead] = PydanticField(default_factory=list)


class RoleAssignRequest(BaseModel):
    expires_at: datetime | None = None


class PermissionGrantRequest(BaseModel):
    expires_at: datetime | None = None
    conditions: dict[str, ConditionValue] | None = None

    @field_validator("conditions")
    @classmethod
    def _check_conditions(cls, value: dict[str, ConditionValue] | None) -> dict[str, ConditionValue] | None:
        return validate_conditions(value)


class AuthzCheckRequest(BaseModel):
    resource: str
    action: str
    context: dict[str, Any] | None = None


class AuthzCheckResponse(BaseModel):
    allowed: bool
    reason: str


class TenantBootstrapRead(BaseModel):
    tenant_id: str
    roles: dict[str, str]


class DevLoginRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
