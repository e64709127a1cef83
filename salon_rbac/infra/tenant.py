from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)

ContextTokens = tuple[Token[str | None], Token[str | None]]


def set_request_context(tenant_id: str | None, user_id: str | None) -> ContextTokens:
    return tenant_id_ctx.set(tenant_id), user_id_ctx.set(user_id)


def reset_request_context(tokens: ContextTokens) -> None:
    tenant_token, user_token = tokens
    user_id_ctx.reset(user_token)
    tenant_id_ctx.reset(tenant_token)


@contextmanager
def request_context(tenant_id: str | None, user_id: str | None) -> Iterator[None]:
    tokens = set_request_context(tenant_id, user_id)
    try:
        yield
    finally:
        reset_request_context(tokens)


def get_tenant_id() -> str | None:
    return tenant_id_ctx.get()


def get_user_id() -> str | None:
    return user_id_ctx.get()
