#!/usr/bin/env python3
"""
Health checks for the shielded pool API
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict

import psutil

from shielded_pool.logging_config import get_logger

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


def check_store_health(session) -> Dict[str, Any]:
    """
    Check the local note store

    Returns:
        dict with status, notes count, response_time_ms and error (if any)
    """
    try:
        start = time.time()
        notes = session.store.list_notes()
        response_time = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "notes": len(notes),
            "response_time_ms": round(response_time, 2),
        }
    except Exception as e:
        logger.error(f"Note store health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_ledger_health(session) -> Dict[str, Any]:
    """
    Check the ledger by reading the session's default pool

    Returns:
        dict with status, response_time_ms and error (if any)
    """
    if session.pool is None:
        return {"status": "not_configured"}
    try:
        start = time.time()
        account = await session.ledger.get_pool_account(session.pool)
        response_time = (time.time() - start) * 1000
        if account is None:
            return {"status": "unhealthy", "error": f"pool {session.pool} not found"}
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "pool": str(session.pool),
        }
    except Exception as e:
        logger.error(f"Ledger health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def get_system_metrics() -> Dict[str, Any]:
    """
    Get process resource usage

    Returns:
        dict with CPU and memory usage
    """
    try:
        memory = psutil.virtual_memory()
        return {
            "cpu": {"usage_percent": round(psutil.cpu_percent(interval=None), 2)},
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
            },
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60

    if uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str,
    }


async def comprehensive_health_check(session) -> Dict[str, Any]:
    """
    Health of every component the session depends on

    Returns:
        dict with overall status and component statuses
    """
    checks = {
        "note_store": check_store_health(session),
        "ledger": await check_ledger_health(session),
        "system": get_system_metrics(),
        "uptime": get_uptime(),
    }

    component_statuses = [checks["note_store"].get("status"), checks["ledger"].get("status")]
    if all(s in ["healthy", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "checks": checks,
    }
