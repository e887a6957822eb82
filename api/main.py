"""FastAPI application for the treasury autopilot.

Endpoints:
- GET /treasury/state - Current balances, allocation and risk score
- GET /treasury/decisions - Decision ledger, oldest first
- POST /treasury/execute - Run a command through the shared executor
- GET /treasury/yields - Ranked yield opportunities for a risk level
- GET/POST /treasury/offline - Offline intent queue
- POST /treasury/offline/drain - Replay queued intents
- GET /treasury/autopilot, POST /treasury/autopilot/start|stop
- GET /system/health - Signal cache freshness

Configuration comes from the environment (see `TreasuryConfig.from_env`).
No authentication (local network only).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from api.routes import health, treasury

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await treasury.close_context()


app = FastAPI(
    title="Treasury Autopilot API",
    description="API for treasury state, decisions, commands, offline queue and autopilot control",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(treasury.router)
app.include_router(health.router)


@app.exception_handler(Exception)
async def global_exception_handler(_request, exc):
    """Global exception handler to ensure consistent error responses."""
    logger.exception(f"Unhandled API error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )
