# backend/fiscalpos/routes/system.py
"""
System health endpoint.

Reports database connectivity, the validation queue and the worker state.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import FiscalAlert
from ..models.fiscal import STATUS_PENDING, STATUS_SENT, STATUS_ERROR
from ..repositories import invoices as invoices_repo
from fiscalpos.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(db.text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_fiscal_queue_health() -> dict:
    """
    Queue depth per status and open alerts.

    Degraded when there are unacknowledged alerts or documents in error.
    """
    try:
        counts = {
            status: len(invoices_repo.documents_in_status(status))
            for status in (STATUS_PENDING, STATUS_SENT, STATUS_ERROR)
        }
        open_alerts = db.session.query(FiscalAlert).filter(FiscalAlert.acknowledged_at.is_(None)).count()
        worker = current_app.extensions.get("fiscal_worker")

        status = "degraded" if open_alerts or counts[STATUS_ERROR] else "healthy"
        return {
            "status": status,
            "details": {
                "documents": counts,
                "open_alerts": open_alerts,
                "worker_running": bool(worker and worker.running),
            }
        }
    except Exception:
        current_app.logger.exception("Fiscal queue health check failed")
        return {"status": "unhealthy", "error": "Fiscal queue error"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    queue_health = check_fiscal_queue_health()

    all_checks = [database_health, queue_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "fiscal_queue": queue_health,
        }
    }
    return response, http_status
