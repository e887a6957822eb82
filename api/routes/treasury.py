"""API routes for the treasury autopilot."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from treasury.automation.commands import resolve_command
from treasury.config import TreasuryConfig, parse_risk_level
from treasury.context import TreasuryContext, build_context
from treasury.errors import (
    ExecutionFailedError,
    InvalidInputError,
    SignalUnavailableError,
    TreasuryError,
    VenueUnresolvedError,
)
from treasury.types import DECISION_KINDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/treasury", tags=["treasury"])

# Process-wide context (initialized on first request)
_context: Optional[TreasuryContext] = None


def get_context() -> TreasuryContext:
    """Get or initialize the treasury context singleton."""
    global _context
    if _context is None:
        _context = build_context(TreasuryConfig.from_env())
        logger.info(f"Treasury context initialized (network={_context.config.network})")
    return _context


def set_context(ctx: Optional[TreasuryContext]) -> None:
    """Swap the context (tests, embedding)."""
    global _context
    _context = ctx


async def close_context() -> None:
    global _context
    if _context is not None:
        await _context.aclose()
        _context = None


def _http_error(exc: TreasuryError) -> HTTPException:
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, VenueUnresolvedError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SignalUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ExecutionFailedError):
        detail: Dict[str, Any] = {"message": str(exc), "decision_id": exc.decision_id}
        return HTTPException(status_code=409, detail=detail)
    return HTTPException(status_code=400, detail=str(exc))


# ========== Request/Response Models ==========


class CommandRequest(BaseModel):
    """Command invocation, as sent by the voice layer."""

    function_name: str = Field(..., description="Command name, e.g. moveToSafetyVault")
    args: Dict[str, Any] = Field(default_factory=dict, description="Command arguments")
    idempotency_key: Optional[str] = Field(None, description="Skip if a decision with this key completed")


class CommandResponse(BaseModel):
    function_name: str
    result: str


class IntentResponse(BaseModel):
    id: str
    timestamp: str
    function_name: str
    args: Dict[str, Any]
    status: str
    idempotency_key: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None


# ========== Snapshot queries ==========


@router.get("/state")
async def get_state():
    """Current treasury state, derived from live balances on every call."""
    ctx = get_context()
    state = ctx.treasury_state()
    return {
        **state.to_dict(),
        "risk_level": ctx.risk_level,
        "positions": [p.to_dict() for p in ctx.book.positions.all()],
    }


@router.get("/decisions")
async def get_decisions(
    kind: Optional[str] = Query(None, description="Filter by decision kind"),
    limit: int = Query(50, ge=1, le=500, description="Most recent N decisions"),
):
    """Decision ledger, oldest first."""
    if kind is not None and kind not in DECISION_KINDS:
        raise HTTPException(status_code=422, detail=f"Unknown decision kind: {kind}")

    decisions = get_context().ledger.decisions(kind)  # type: ignore[arg-type]
    return {"decisions": [d.to_dict() for d in decisions[-limit:]], "count": len(decisions)}


@router.get("/yields")
async def get_yields(risk_level: Optional[str] = Query(None, description="conservative | moderate | aggressive")):
    ctx = get_context()
    try:
        level = parse_risk_level(risk_level) if risk_level else ctx.risk_level
    except InvalidInputError as e:
        raise _http_error(e) from e

    result = await ctx.aggregator.find_best(level, ctx.book.positions.all())
    return {"risk_level": level, **result.to_dict()}


@router.get("/venues")
async def get_venues():
    return {"venues": get_context().router.available_venues()}


@router.get("/activity")
async def get_activity(count: int = Query(20, ge=1, le=100)):
    return {"entries": [e.to_dict() for e in get_context().activity.recent(count)]}


# ========== Commands ==========


@router.post("/execute", response_model=CommandResponse)
async def execute_command(request: CommandRequest):
    """Run a command through the shared executor.

    Unlike the voice path, errors come back as HTTP status codes.
    """
    ctx = get_context()
    try:
        result = await ctx.executor.dispatch(
            request.function_name,
            request.args,
            idempotency_key=request.idempotency_key,
        )
    except TreasuryError as e:
        raise _http_error(e) from e
    return CommandResponse(function_name=request.function_name, result=result)


# ========== Offline queue ==========


@router.get("/offline")
async def get_offline_queue():
    queue = get_context().offline_queue
    return {
        "intents": [i.to_dict() for i in queue.all()],
        "pending": len(queue.pending()),
        "draining": queue.is_draining,
        "summary": queue.format_for_voice(),
    }


@router.post("/offline", response_model=IntentResponse, status_code=201)
async def enqueue_offline(request: CommandRequest):
    """Queue a command captured while disconnected."""
    try:
        resolve_command(request.function_name)
    except InvalidInputError as e:
        raise _http_error(e) from e

    intent = get_context().offline_queue.enqueue(
        request.function_name,
        request.args,
        idempotency_key=request.idempotency_key,
    )
    return IntentResponse(**intent.to_dict())


@router.post("/offline/drain")
async def drain_offline_queue():
    """Replay queued intents in order. A drain already in progress makes this a no-op."""
    ctx = get_context()
    results = await ctx.offline_queue.drain_pending(ctx.executor)
    return {
        "results": [r.to_dict() for r in results],
        "completed": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
    }


@router.delete("/offline/processed")
async def clear_processed_intents():
    return {"removed": get_context().offline_queue.clear_processed()}


# ========== Autopilot ==========


def _autopilot_status(ctx: TreasuryContext) -> dict:
    scheduler = ctx.scheduler
    return {
        "state": scheduler.state.value,
        "running": scheduler.is_running,
        "cycle_in_progress": scheduler.cycle_in_progress,
        "interval_seconds": scheduler.interval_seconds,
        "risk_level": ctx.risk_level,
        "cycles_run": scheduler.cycles_run,
        "ticks_skipped": scheduler.ticks_skipped,
        "last_report": scheduler.last_report.to_dict() if scheduler.last_report else None,
    }


@router.get("/autopilot")
async def get_autopilot():
    return _autopilot_status(get_context())


@router.post("/autopilot/start")
async def start_autopilot():
    ctx = get_context()
    started = ctx.scheduler.start()
    return {"started": started, **_autopilot_status(ctx)}


@router.post("/autopilot/stop")
async def stop_autopilot():
    ctx = get_context()
    stopped = ctx.scheduler.stop()
    return {"stopped": stopped, **_autopilot_status(ctx)}
