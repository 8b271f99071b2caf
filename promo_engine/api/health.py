"""
Operational endpoints (no secrets exposed).

- GET /healthz: liveness
- GET /readyz: database reachable and schema present
- GET /metrics: Prometheus text export of in-process counters
"""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from promo_engine.core.database import get_engine
from promo_engine.core.metrics import METRICS

logger = logging.getLogger("promo_engine")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "plans",
    "coupons",
    "user_accounts",
    "coupon_redemptions",
    "purchase_attempts",
    "reconciliation_items",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@root_router.get("/metrics", tags=["metrics"])
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
