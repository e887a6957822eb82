"""User-facing agent activity feed.

Entries are bounded (oldest dropped first) and mirrored into the standard
logger so the process log carries the same story the UI shows.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Optional

from treasury.types import utc_now

logger = logging.getLogger(__name__)

ActivityLevel = Literal["info", "action", "warning", "error"]

_LOG_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "action": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class ActivityEntry:
    level: ActivityLevel
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
            "data": dict(self.data),
        }


class ActivityLog:
    def __init__(self, capacity: int = 100) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=capacity)
        self._callback: Optional[Callable[[ActivityEntry], None]] = None

    def set_callback(self, callback: Optional[Callable[[ActivityEntry], None]]) -> None:
        self._callback = callback

    def log(self, level: ActivityLevel, message: str, **data: Any) -> ActivityEntry:
        entry = ActivityEntry(level=level, message=message, data=data)
        self._entries.append(entry)
        logger.log(_LOG_LEVELS[level], f"[{level}] {message}")
        if self._callback is not None:
            try:
                self._callback(entry)
            except Exception:
                logger.exception("Activity callback failed")
        return entry

    def info(self, message: str, **data: Any) -> ActivityEntry:
        return self.log("info", message, **data)

    def action(self, message: str, **data: Any) -> ActivityEntry:
        return self.log("action", message, **data)

    def warning(self, message: str, **data: Any) -> ActivityEntry:
        return self.log("warning", message, **data)

    def error(self, message: str, **data: Any) -> ActivityEntry:
        return self.log("error", message, **data)

    def entries(self) -> list[ActivityEntry]:
        return list(self._entries)

    def recent(self, count: int = 5) -> list[ActivityEntry]:
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def __len__(self) -> int:
        return len(self._entries)

    def format_for_voice(self, count: int = 5) -> str:
        recent = self.recent(count)
        if not recent:
            return "No agent activity yet. Start the auto optimizer or scan for yields."
        lines = [f"[{e.timestamp.strftime('%H:%M:%S')}] {e.level.upper()}: {e.message}" for e in recent]
        return "Recent agent activity:\n" + "\n".join(lines)
