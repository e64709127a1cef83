from __future__ import annotations

from fastapi import FastAPI, HTTPException

from salon_rbac.api.routers import authz, identity
from salon_rbac.infra.db import check_db_ready
from salon_rbac.infra.log_config import configure_logging

configure_logging()

app = FastAPI(
    title="salon-rbac",
    description="Multi-tenant role-based authorization engine for the salon platform.",
    version="0.1.0",
)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(authz.router, prefix="/api/authz", tags=["authz"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
