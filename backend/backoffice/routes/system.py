# backend/backoffice/routes/system.py
"""
System health endpoint.

Reports database reachability and whether any recorded sale is still
waiting for its stock to be applied.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import Site, User, Product
from ..services import reconcile_service, sales_service
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        details = {
            "sites": db.session.query(Site).count(),
            "users": db.session.query(User).count(),
            "products": db.session.query(Product).count(),
        }
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


def check_stock_sync_health() -> dict:
    """
    Degraded while sales exist whose stock was never applied, or whose
    header was written without items. Both need an administrator.
    """
    start_time = time.time()
    try:
        unreconciled = len(reconcile_service.list_unreconciled_sales())
        inconsistent = len(sales_service.list_inconsistent_sales())
        elapsed_ms = (time.time() - start_time) * 1000

        result = {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"unreconciled_sales": unreconciled, "inconsistent_sales": inconsistent},
        }
        if unreconciled or inconsistent:
            result["status"] = "degraded"
            result["warning"] = "Sales need reconciliation"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Stock sync health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Stock sync check error"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: database unreachable
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "stock_sync": check_stock_sync_health(),
    }
    statuses = [c["status"] for c in checks.values()]

    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
