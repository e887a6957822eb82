#!/usr/bin/env python3
"""Run the treasury autopilot loop in the foreground.

Usage:
    python scripts/run_autopilot.py [--interval SECONDS] [--risk-level LEVEL] [--iterations N] [--live]

Examples:
    python scripts/run_autopilot.py --iterations 3
    python scripts/run_autopilot.py --interval 30 --risk-level conservative
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from treasury.automation.scheduler import cli  # noqa: E402

if __name__ == "__main__":
    cli()
