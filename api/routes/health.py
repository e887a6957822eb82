"""Health check API endpoint."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal

from fastapi import APIRouter
from pydantic import BaseModel

from api.routes.treasury import get_context

router = APIRouter(prefix="/system/health", tags=["health"])

# Track API start time
_api_start_time = time.time()


class SignalHealth(BaseModel):
    """Freshness of one cached market signal."""

    key: str
    signal_class: str
    ttl_seconds: float
    age_seconds: float | None = None
    fresh: bool
    available: bool
    failures: int
    last_error: str | None = None


class HealthCheckResponse(BaseModel):
    """System health check response."""

    overall: Dict[str, str]
    api: Dict[str, Any]
    autopilot: Dict[str, Any]
    signals: List[SignalHealth]


def signal_status(signals: List[Dict[str, Any]]) -> Literal["ok", "degraded", "error"]:
    """Worst case across signals: unavailable is an error, stale is degraded.

    Signals that were never fetched are not counted against health.
    """
    fetched = [s for s in signals if s["available"] or s["failures"]]
    if any(not s["available"] for s in fetched):
        return "error"
    if any(not s["fresh"] for s in fetched):
        return "degraded"
    return "ok"


@router.get("", response_model=HealthCheckResponse)
async def health_check():
    """Get system health status.

    Returns health status for:
    - API uptime
    - Autopilot state
    - Market signal cache freshness
    """
    ctx = get_context()
    signals = ctx.cache.status()

    return {
        "overall": {"status": signal_status(signals)},
        "api": {
            "status": "ok",
            "uptime_seconds": int(time.time() - _api_start_time),
            "message": "API running",
        },
        "autopilot": {
            "state": ctx.scheduler.state.value,
            "cycles_run": ctx.scheduler.cycles_run,
            "network": ctx.config.network,
            "dry_run": ctx.config.dry_run,
        },
        "signals": signals,
    }
