from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status

from salon_rbac.api.deps import Authz, Claims, require_authz
from salon_rbac.api.routers.identity import get_identity_service
from salon_rbac.domain.errors import (
    AlreadyGrantedError,
    AuthzError,
    NotFoundError,
    NotGrantedError,
    PrivilegeEscalationError,
    TenantMismatchError,
)
from salon_rbac.domain.grants import EffectivePermission, RoleRecord
from salon_rbac.domain.models import (
    AuthzCheckRequest,
    AuthzCheckResponse,
    EffectivePermissionRead,
    PermissionGrantRequest,
    PermissionRead,
    RoleAssignRequest,
    RoleRead,
    TenantBootstrapRead,
    UserRoleGrantRead,
)
from salon_rbac.domain.permissions import CONTEXT_TENANT_ID, Action, Resource
from salon_rbac.services.identity_service import IdentityService
from salon_rbac.services.role_admin_service import RoleAdminService
from salon_rbac.services.tenant_bootstrap_service import TenantBootstrapService

router = APIRouter()


def get_role_admin_service() -> RoleAdminService:
    return RoleAdminService()


def get_tenant_bootstrap_service() -> TenantBootstrapService:
    return TenantBootstrapService()


Admin = Annotated[RoleAdminService, Depends(get_role_admin_service)]
Identity = Annotated[IdentityService, Depends(get_identity_service)]
Bootstrap = Annotated[TenantBootstrapService, Depends(get_tenant_bootstrap_service)]


def _handle_authz_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError | NotGrantedError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, AlreadyGrantedError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, TenantMismatchError | PrivilegeEscalationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


def _permission_read(item: EffectivePermission) -> EffectivePermissionRead:
    return EffectivePermissionRead(
        id=item.id,
        resource=item.resource,
        action=item.action,
        conditions=[dict(conditions) for conditions in item.condition_sets],
    )


def _role_grant_read(role: RoleRecord) -> UserRoleGrantRead:
    return UserRoleGrantRead(
        id=role.id,
        tenant_id=role.tenant_id,
        name=role.name,
        description=role.description,
        level=role.level,
        permissions=[
            PermissionRead(
                id=permission.id,
                resource=permission.resource,
                action=permission.action,
                conditions=permission.conditions,
            )
            for permission in role.permissions
        ],
    )


def _ensure_tenant_user(identity: IdentityService, claims: dict[str, Any], user_id: str) -> None:
    try:
        identity.get_user(claims["tenant_id"], user_id)
    except NotFoundError as exc:
        _handle_authz_error(exc)


@router.post("/check", response_model=AuthzCheckResponse)
def check(payload: AuthzCheckRequest, claims: Claims, authz: Authz) -> AuthzCheckResponse:
    decision = authz.evaluate(claims["sub"], payload.resource, payload.action, payload.context)
    return AuthzCheckResponse(allowed=decision.allowed, reason=decision.reason)


@router.get("/me/permissions", response_model=list[EffectivePermissionRead])
def my_permissions(claims: Claims, authz: Authz) -> list[EffectivePermissionRead]:
    try:
        return [_permission_read(item) for item in authz.effective_permissions(claims["sub"])]
    except AuthzError as exc:
        _handle_authz_error(exc)
        raise


@router.get(
    "/users/{user_id}/permissions",
    response_model=list[EffectivePermissionRead],
    dependencies=[Depends(require_authz(Resource.USERS, Action.READ))],
)
def user_permissions(
    user_id: str,
    claims: Claims,
    authz: Authz,
    identity: Identity,
) -> list[EffectivePermissionRead]:
    _ensure_tenant_user(identity, claims, user_id)
    try:
        return [_permission_read(item) for item in authz.effective_permissions(user_id)]
    except AuthzError as exc:
        _handle_authz_error(exc)
        raise


@router.get(
    "/users/{user_id}/roles",
    response_model=list[UserRoleGrantRead],
    dependencies=[Depends(require_authz(Resource.USERS, Action.READ))],
)
def user_roles(user_id: str, claims: Claims, authz: Authz, identity: Identity) -> list[UserRoleGrantRead]:
    _ensure_tenant_user(identity, claims, user_id)
    try:
        return [_role_grant_read(role) for role in authz.get_user_roles(user_id)]
    except AuthzError as exc:
        _handle_authz_error(exc)
        raise


@router.post(
    "/users/{user_id}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_authz(Resource.ROLES, Action.MANAGE))],
)
def assign_role(
    user_id: str,
    role_id: str,
    claims: Claims,
    admin: Admin,
    payload: RoleAssignRequest | None = None,
) -> Response:
    request = payload or RoleAssignRequest()
    try:
        admin.assign_role(user_id, role_id, granted_by=claims["sub"], expires_at=request.expires_at)
    except (AuthzError, ValueError) as exc:
        _handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/users/{user_id}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_authz(Resource.ROLES, Action.MANAGE))],
)
def remove_role(user_id: str, role_id: str, claims: Claims, admin: Admin) -> Response:
    try:
        admin.remove_role(user_id, role_id, removed_by=claims["sub"])
    except (AuthzError, ValueError) as exc:
        _handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/users/{user_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_authz(Resource.PERMISSIONS, Action.MANAGE))],
)
def grant_permission(
    user_id: str,
    permission_id: str,
    claims: Claims,
    admin: Admin,
    payload: PermissionGrantRequest | None = None,
) -> Response:
    request = payload or PermissionGrantRequest()
    try:
        admin.grant_permission(
            user_id,
            permission_id,
            granted_by=claims["sub"],
            expires_at=request.expires_at,
            conditions=request.conditions,
        )
    except (AuthzError, ValueError) as exc:
        _handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/users/{user_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_authz(Resource.PERMISSIONS, Action.MANAGE))],
)
def revoke_permission(user_id: str, permission_id: str, claims: Claims, admin: Admin) -> Response:
    try:
        admin.revoke_permission(user_id, permission_id, revoked_by=claims["sub"])
    except (AuthzError, ValueError) as exc:
        _handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tenants/{tenant_id}/bootstrap", response_model=TenantBootstrapRead)
def bootstrap_tenant(
    tenant_id: str,
    claims: Claims,
    authz: Authz,
    bootstrap: Bootstrap,
) -> TenantBootstrapRead:
    decision = authz.evaluate(claims["sub"], Resource.ROLES, Action.MANAGE, {CONTEXT_TENANT_ID: tenant_id})
    if not decision.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)
    try:
        roles = bootstrap.initialize_tenant_roles(tenant_id)
    except AuthzError as exc:
        _handle_authz_error(exc)
        raise
    return TenantBootstrapRead(tenant_id=tenant_id, roles=roles)


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_authz(Resource.ROLES, Action.READ))],
)
def list_roles(claims: Claims, identity: Identity) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in identity.list_roles(claims["tenant_id"])]


@router.get(
    "/permissions",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_authz(Resource.PERMISSIONS, Action.READ))],
)
def list_permissions(identity: Identity) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in identity.list_permissions()]
