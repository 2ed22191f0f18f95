# backend/bizledger/routes/system.py
"""
System health endpoint.

Reports database connectivity plus the two ledger signals an operator looks
at first: open cash sessions and unresolved stock alerts.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Company, CashSession, Alert
from bizledger.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic ledger queries.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        company_count = db.session.query(Company).count()
        open_sessions = db.session.query(CashSession).filter_by(status="open").count()
        open_alerts = db.session.query(Alert).filter_by(is_resolved=False).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "companies": company_count,
                "open_cash_sessions": open_sessions,
                "open_alerts": open_alerts,
            }
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503

    response = {
        "status": database_health["status"],
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
        }
    }

    return response, http_status
