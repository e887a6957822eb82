#!/usr/bin/env python3
"""Run the treasury autopilot API server.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT]

Environment:
    TREASURY_NETWORK - testnet (default) or mainnet
    TREASURY_RISK_LEVEL - conservative | moderate (default) | aggressive
    TREASURY_DRY_RUN - true (default) keeps execution on paper adapters
    DATABASE_URL - Offline queue store (default: sqlite:///treasury_offline.db)

Examples:
    python scripts/run_api.py
    python scripts/run_api.py --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    """Run the API server."""
    parser = argparse.ArgumentParser(description="Run the treasury autopilot API server.")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    print(f"Starting FastAPI server on {args.host}:{args.port}")
    print("Endpoints:")
    print(f"  - GET http://{args.host}:{args.port}/treasury/state")
    print(f"  - POST http://{args.host}:{args.port}/treasury/execute")
    print(f"  - GET http://{args.host}:{args.port}/system/health")
    print()

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
