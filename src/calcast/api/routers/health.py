"""Health endpoint reporting store reachability."""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter

router = APIRouter()
logger = logging.getLogger(__name__)

_start_time = time.monotonic()


@router.get("/health")
async def health_check():
    """Return service status and whether the key-value store answers."""
    result = {
        "status": "ok",
        "service": "calcast-api",
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "store": "unknown",
    }

    try:
        from calcast.store.base import get_store

        await get_store().get("health:ping")
        result["store"] = "connected"
    except Exception as exc:
        logger.warning("Store health check failed: %s", exc)
        result["store"] = "disconnected"
        result["status"] = "degraded"

    return result
