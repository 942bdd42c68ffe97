from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from app.api.routers import audit, authz, identity
from app.infra.audit import AuditContextMiddleware, audit_recorder
from app.infra.db import check_db_ready
from app.infra.logging import configure_logging
from app.infra.scheduler import scheduler
from app.services.role_catalog_service import RoleCatalogService

ROLE_INTEGRITY_CHECK_INTERVAL_S = float(os.getenv("ROLE_INTEGRITY_CHECK_INTERVAL_S", "0"))
ROLE_INTEGRITY_JOB_KEY = "system:role-integrity"


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    if ROLE_INTEGRITY_CHECK_INTERVAL_S > 0:
        scheduler.start(
            ROLE_INTEGRITY_JOB_KEY,
            ROLE_INTEGRITY_CHECK_INTERVAL_S,
            RoleCatalogService().check_integrity,
        )
    try:
        yield
    finally:
        scheduler.stop_all()
        audit_recorder.writer.shutdown()


app = FastAPI(
    title="booking-authz",
    description="Authorization and compliance-audit service for the booking back office.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditContextMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(authz.router, prefix="/api/authz", tags=["authz"])
app.include_router(audit.router, prefix="/api/audit", tags=["audit"])


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
