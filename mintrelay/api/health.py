"""
Liveness and readiness probes.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from mintrelay.core.database import check_connection, get_engine
from mintrelay.core.errors import AppError

logger = logging.getLogger("mintrelay")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["mint_records", "subscription_mirror", "collections", "drops", "drop_claims", "idempotency_keys"]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
async def readyz(request: Request):
    """Readiness: mirror tables present and the RPC endpoint answering."""
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] schema inspection failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    services = getattr(request.app.state, "services", None)
    if services is None:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "services not initialised"})
    try:
        sponsor = services.executor.sponsor
        balance = await services.chain.get_balance(sponsor)
    except AppError as e:
        logger.warning(f"[readyz] chain check failed: {e.code}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": e.code})

    return {
        "status": "ok",
        "sponsor": sponsor,
        "sponsorFunded": balance >= services.executor.min_balance_wei,
    }
