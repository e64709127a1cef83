from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from salon_rbac.domain.permissions import Action, permission_label
from salon_rbac.infra.auth import decode_access_token
from salon_rbac.infra.tenant import set_request_context
from salon_rbac.services.authorization_service import AuthorizationService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_authorization_service() -> AuthorizationService:
    return AuthorizationService()


def get_current_claims(
    request: Request,
    token: Annotated[str, Depends(oauth2_scheme)],
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except (jwt.PyJWTError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.claims = claims
    set_request_context(claims["tenant_id"], claims["sub"])
    return claims


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Authz = Annotated[AuthorizationService, Depends(get_authorization_service)]


def require_authz(resource: str, action: Action) -> Callable[..., dict[str, Any]]:
    """Dependency that evaluates ``resource:action`` for the token subject."""

    label = permission_label(resource, action)

    def _checker(claims: Claims, service: Authz) -> dict[str, Any]:
        decision = service.evaluate(claims["sub"], resource, action)
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {label} ({decision.reason})",
            )
        return claims

    return _checker
