from __future__ import annotations

import logging
import os

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, create_engine

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://salon:salon@db:5432/salon_rbac",
)
# 0 disables the per-check statement timeout.
AUTHZ_STORE_TIMEOUT_MS = int(os.getenv("AUTHZ_STORE_TIMEOUT_MS", "0"))

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def get_engine() -> Engine:
    return engine


def apply_statement_timeout(session: Session, timeout_ms: int | None) -> bool:
    """Bound every statement of the current transaction to ``timeout_ms``.

    Only PostgreSQL supports this; other dialects run unbounded and the call
    returns ``False``.
    """
    if not timeout_ms or session.get_bind().dialect.name != "postgresql":
        return False
    session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
    return True


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("database not ready: %s", exc)
        return False
    return True
