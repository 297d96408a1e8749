from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from orgcore.api.routers import assignments, hierarchy, permissions, reference_codes
from orgcore.infra.audit import AuditMiddleware
from orgcore.infra.db import check_db_ready
from orgcore.infra.logging_setup import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="orgcore",
    description="Role hierarchy, recruitment codes and assignment validation for a multi-tier organization.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(reference_codes.router, prefix="/api/reference-codes", tags=["reference-codes"])
app.include_router(hierarchy.router, prefix="/api/hierarchy", tags=["hierarchy"])
app.include_router(assignments.router, prefix="/api/assignments", tags=["assignments"])
app.include_router(permissions.router, prefix="/api/permissions", tags=["permissions"])


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": {"code": "INTERNAL_ERROR", "message": "internal storage error"}},
    )


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
