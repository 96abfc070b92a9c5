"""
Health endpoints.

Liveness never touches dependencies; readiness probes the database and the
entitlement tables.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from jobboard.core.database import check_connection, get_engine
from jobboard.features.billing.service import billing_enabled

logger = logging.getLogger("jobboard")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["subscriptions", "usage_limits"]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "billing_enabled": billing_enabled()}
