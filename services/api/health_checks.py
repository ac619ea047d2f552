#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import psutil

import aiosqlite

from services.api.logging_config import get_logger
from services.ledger.rpc import LedgerClient
from services.transfer.errors import LedgerError

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


async def check_journal_health(journal_path: str) -> Dict[str, Any]:
    """
    Check the transfer journal opens and passes an integrity check

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        async with aiosqlite.connect(journal_path) as conn:
            async with conn.execute("PRAGMA quick_check") as cursor:
                row = await cursor.fetchone()
        response_time = (time.time() - start) * 1000
        if not row or row[0] != "ok":
            return {"status": "unhealthy", "error": f"quick_check: {row[0] if row else 'no result'}"}
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2)
        }
    except Exception as e:
        logger.error(f"Journal health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e)
        }


async def check_rpc_health(rpc_url: str) -> Dict[str, Any]:
    """
    Check Solana RPC connectivity with getHealth

    Args:
        rpc_url: Solana RPC endpoint URL

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        async with LedgerClient(rpc_url, timeout=5.0) as client:
            await client.get_health()
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "rpc_url": rpc_url
        }
    except LedgerError as e:
        logger.error(f"RPC health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "rpc_url": rpc_url
        }


def get_system_metrics() -> Dict[str, Any]:
    """
    Get system resource metrics

    Returns:
        dict with CPU and memory usage
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        return {
            "cpu": {
                "usage_percent": round(cpu_percent, 2)
            },
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2)
            }
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str
    }


async def comprehensive_health_check(
    journal_path: Optional[str],
    rpc_url: Optional[str] = None
) -> Dict[str, Any]:
    """
    Perform comprehensive health check of all services

    Args:
        journal_path: transfer journal file, or None when journaling is off
        rpc_url: Solana RPC URL to check

    Returns:
        dict with overall status and component statuses
    """
    checks = {}

    if journal_path:
        checks["journal"] = await check_journal_health(journal_path)
    else:
        checks["journal"] = {"status": "disabled"}

    if rpc_url:
        checks["rpc"] = await check_rpc_health(rpc_url)
    else:
        checks["rpc"] = {"status": "not_configured"}

    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    component_statuses = [
        checks["journal"].get("status"),
        checks["rpc"].get("status"),
    ]
    if all(s in ["healthy", "disabled", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }


async def liveness_check() -> bool:
    return True
