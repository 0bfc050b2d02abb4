"""
Health report for the /status endpoint.

Each subsystem check returns its own entry; the database being down makes
the service unhealthy, any other failing check only degrades it.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from storage.database import check_db_connection

from .engine_manager import engine_manager

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

_started_monotonic: float = time.monotonic()
_started_at: str = datetime.now(timezone.utc).isoformat()


def mark_startup() -> None:
    """Reset the uptime clock; called from the app lifespan."""
    global _started_monotonic, _started_at
    _started_monotonic = time.monotonic()
    _started_at = datetime.now(timezone.utc).isoformat()


def _error_text(exc: Exception) -> str:
    return str(exc)[:200]


def check_database() -> Tuple[Dict[str, Any], bool]:
    ok, error = check_db_connection(engine_manager.session_factory)
    return {"status": "up" if ok else "down", "error": error or None}, ok


def check_broker() -> Tuple[Dict[str, Any], bool]:
    try:
        connected = bool(engine_manager.get_broker().is_connected())
    except Exception as exc:
        logger.warning("Broker health check failed: %s", exc)
        return {"status": "degraded", "error": _error_text(exc)}, False
    return {"status": "up" if connected else "degraded", "error": None}, connected


def check_workflow_engine() -> Tuple[Dict[str, Any], bool]:
    try:
        status = engine_manager.get_status()
    except Exception as exc:
        return {"status": "unknown", "error": _error_text(exc)}, False
    return {
        "status": "ready" if status["built"] else "idle",
        "active_runs": status["active_runs"],
        "busy_policy": status["busy_policy"],
    }, True


def build_health_response() -> Dict[str, Any]:
    """
    Returns:
        Dict with status ("healthy" | "degraded" | "unhealthy"), per-check
        entries, uptime and version
    """
    database, database_ok = check_database()
    broker, broker_ok = check_broker()
    workflow_engine, engine_ok = check_workflow_engine()

    if not database_ok:
        status = "unhealthy"
    elif broker_ok and engine_ok:
        status = "healthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "service": "TradeFlow Backend",
        "version": APP_VERSION,
        "uptime_seconds": round(time.monotonic() - _started_monotonic, 1),
        "started_at": _started_at,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": database,
            "broker": broker,
            "workflow_engine": workflow_engine,
        },
    }
