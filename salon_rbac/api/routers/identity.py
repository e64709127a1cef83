from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from salon_rbac.api.deps import Claims, require_authz
from salon_rbac.domain.errors import AuthError, ConflictError, NotFoundError
from salon_rbac.domain.models import (
    BootstrapAdminRequest,
    BranchCreate,
    BranchRead,
    DevLoginRequest,
    StaffBranchBindRequest,
    StaffBranchRead,
    TenantCreate,
    TenantRead,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from salon_rbac.domain.permissions import Action, Resource
from salon_rbac.infra.auth import create_access_token
from salon_rbac.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, service: Service) -> TenantRead:
    try:
        tenant = service.create_tenant(payload)
        return TenantRead.model_validate(tenant)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.tenant_id, payload.username, payload.password)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(user_id=user.id, tenant_id=user.tenant_id)
    return TokenResponse(access_token=token)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_authz(Resource.USERS, Action.WRITE))],
)
def create_user(payload: UserCreate, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.create_user(claims["tenant_id"], payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_authz(Resource.USERS, Action.READ))],
)
def get_user(user_id: str, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.get_user(claims["tenant_id"], user_id)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_authz(Resource.USERS, Action.WRITE))],
)
def update_user(user_id: str, payload: UserUpdate, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.update_user(claims["tenant_id"], user_id, payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/branches",
    response_model=BranchRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_authz(Resource.BRANCHES, Action.WRITE))],
)
def create_branch(payload: BranchCreate, claims: Claims, service: Service) -> BranchRead:
    try:
        branch = service.create_branch(claims["tenant_id"], payload)
        return BranchRead.model_validate(branch)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/users/{user_id}/branches/{branch_id}",
    response_model=StaffBranchRead,
    dependencies=[Depends(require_authz(Resource.STAFF, Action.WRITE))],
)
def bind_user_branch(
    user_id: str,
    branch_id: str,
    claims: Claims,
    service: Service,
    payload: StaffBranchBindRequest | None = None,
) -> StaffBranchRead:
    request = payload or StaffBranchBindRequest()
    try:
        link = service.bind_user_branch(
            claims["tenant_id"],
            user_id,
            branch_id,
            department=request.department,
            is_primary=request.is_primary,
        )
        return StaffBranchRead.model_validate(link)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
