from __future__ import annotations


class AuthzError(Exception):
    pass


class NotFoundError(AuthzError):
    pass


class ConflictError(AuthzError):
    pass


class AlreadyGrantedError(ConflictError):
    """The principal already holds the role or permission."""


class NotGrantedError(AuthzError):
    """Remove/revoke targeted a relationship that does not exist."""


class TenantMismatchError(AuthzError):
    pass


class PrivilegeEscalationError(AuthzError):
    pass


class AuthError(AuthzError):
    pass
