from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import jwt
import pytest

from salon_rbac.infra import auth
from salon_rbac.infra.log_config import RequestContextFilter
from salon_rbac.infra.tenant import get_tenant_id, get_user_id, request_context


def _record() -> logging.LogRecord:
    return logging.LogRecord("salon_rbac.test", logging.INFO, __file__, 1, "msg", None, None)


def test_request_context_filter_stamps_current_principal() -> None:
    log_filter = RequestContextFilter()
    with request_context("tenant-1", "user-1"):
        record = _record()
        assert log_filter.filter(record)
    assert record.tenant_id == "tenant-1"  # type: ignore[attr-defined]
    assert record.user_id == "user-1"  # type: ignore[attr-defined]

    outside = _record()
    log_filter.filter(outside)
    assert outside.tenant_id == "-"  # type: ignore[attr-defined]
    assert get_tenant_id() is None
    assert get_user_id() is None


def test_access_token_carries_identity_only() -> None:
    token = auth.create_access_token(user_id="user-1", tenant_id="tenant-1")
    claims = auth.decode_access_token(token)
    assert claims["sub"] == "user-1"
    assert claims["tenant_id"] == "tenant-1"
    assert "permissions" not in claims


def test_access_token_requires_identity_claims() -> None:
    expires = int((datetime.now(UTC) + timedelta(minutes=5)).timestamp())
    no_subject = jwt.encode({"tenant_id": "tenant-1", "exp": expires}, auth.JWT_SECRET, algorithm=auth.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        auth.decode_access_token(no_subject)

    no_expiry = jwt.encode({"sub": "user-1", "tenant_id": "tenant-1"}, auth.JWT_SECRET, algorithm=auth.JWT_ALGORITHM)
    with pytest.raises(jwt.PyJWTError):
        auth.decode_access_token(no_expiry)


def test_password_hash_is_salted_and_verified() -> None:
    stored = auth.hash_password("secret")
    assert stored == auth.hash_password("secret")
    assert "secret" not in stored
    assert auth.verify_password("secret", stored)
    assert not auth.verify_password("Secret", stored)
