"""Durable FIFO of commands captured while offline.

The whole queue is stored as one JSON list under a single key. Intents move
`queued -> processing -> completed|failed` and never go back. An intent found
in `processing` when the queue is loaded was interrupted mid-execution; it is
marked failed instead of being replayed, since the command may already have
had side effects.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Protocol

from treasury.errors import TreasuryError
from treasury.storage.kv import KeyValueStore
from treasury.types import IntentStatus, OfflineIntent, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    "queued": frozenset({"processing"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class IntentTransitionError(TreasuryError):
    """An intent status change would move backwards or skip a state."""


class IntentExecutor(Protocol):
    async def dispatch(
        self,
        name: str,
        args: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Run a command, raising on failure."""


@dataclass(frozen=True)
class DrainResult:
    intent_id: str
    function_name: str
    status: IntentStatus
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "function_name": self.function_name,
            "status": self.status,
            "result": self.result,
            "error": self.error,
        }


class OfflineIntentQueue:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        key: str = "treasury_offline_queue",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.key = key
        self._clock = clock
        self._counter = itertools.count(1)
        self._draining = False
        self._intents: list[OfflineIntent] = self._load()

    def _load(self) -> list[OfflineIntent]:
        raw = self.store.get(self.key)
        if not raw:
            return []

        try:
            data = json.loads(raw)
        except ValueError:
            logger.error(f"Offline queue under {self.key!r} is not valid JSON; starting empty")
            return []

        intents = [OfflineIntent.from_dict(item) for item in data if isinstance(item, dict)]
        interrupted = [i for i in intents if i.status == "processing"]
        for intent in interrupted:
            intent.status = "failed"
            intent.error = "interrupted: process stopped while this intent was processing"
            logger.warning(f"Offline intent {intent.id} ({intent.function_name}) was interrupted; marked failed")
        if interrupted:
            self._save(intents)
        return intents

    def _save(self, intents: Optional[list[OfflineIntent]] = None) -> None:
        payload = [i.to_dict() for i in (intents if intents is not None else self._intents)]
        self.store.set(self.key, json.dumps(payload))

    def _transition(self, intent: OfflineIntent, status: IntentStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[intent.status]:
            raise IntentTransitionError(f"Intent {intent.id}: illegal transition {intent.status} -> {status}")
        intent.status = status
        self._save()

    def enqueue(
        self,
        function_name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> OfflineIntent:
        now = self._clock()
        intent_id = f"offline-{next(self._counter)}-{int(now.timestamp() * 1000)}"
        intent = OfflineIntent(
            id=intent_id,
            timestamp=now,
            function_name=function_name,
            args=dict(args or {}),
            idempotency_key=idempotency_key or intent_id,
        )
        self._intents.append(intent)
        self._save()
        logger.info(f"Queued offline intent {intent.id}: {function_name}")
        return intent

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def drain_pending(self, executor: IntentExecutor) -> list[DrainResult]:
        """Replay queued intents in insertion order.

        Each intent is independent: a failure is recorded and the drain moves
        on. A drain requested while another is running returns [] at once.
        """
        if self._draining:
            logger.info("Offline queue drain already in progress; skipping")
            return []

        self._draining = True
        try:
            pending = self.pending()
            if pending:
                logger.info(f"Processing {len(pending)} queued offline intents")

            results = []
            for intent in pending:
                self._transition(intent, "processing")
                try:
                    result = await executor.dispatch(
                        intent.function_name,
                        intent.args,
                        idempotency_key=intent.idempotency_key,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    intent.error = str(e) or e.__class__.__name__
                    self._transition(intent, "failed")
                    logger.warning(f"Offline intent {intent.id} ({intent.function_name}) failed: {intent.error}")
                else:
                    intent.result = result
                    self._transition(intent, "completed")
                    logger.info(f"Offline intent {intent.id} ({intent.function_name}) completed")

                results.append(
                    DrainResult(
                        intent_id=intent.id,
                        function_name=intent.function_name,
                        status=intent.status,
                        result=intent.result,
                        error=intent.error,
                    )
                )
            return results
        finally:
            self._draining = False

    def get(self, intent_id: str) -> Optional[OfflineIntent]:
        return next((i for i in self._intents if i.id == intent_id), None)

    def pending(self) -> list[OfflineIntent]:
        return [i for i in self._intents if i.status == "queued"]

    def all(self) -> list[OfflineIntent]:
        return list(self._intents)

    def clear_processed(self) -> int:
        """Drop completed and failed intents. Returns how many were removed."""
        before = len(self._intents)
        self._intents = [i for i in self._intents if i.status in ("queued", "processing")]
        self._save()
        return before - len(self._intents)

    def clear(self) -> None:
        self._intents = []
        self._save()

    def format_for_voice(self) -> str:
        if not self._intents:
            return "No offline intents queued."

        counts: dict[str, int] = {}
        for intent in self._intents:
            counts[intent.status] = counts.get(intent.status, 0) + 1
        parts = [
            f"{counts[status]} {'pending' if status == 'queued' else status}"
            for status in ("queued", "processing", "completed", "failed")
            if counts.get(status)
        ]
        return "Offline queue: " + ", ".join(parts)


class ConnectivityMonitor:
    """Triggers one drain on each offline -> online edge."""

    def __init__(self, *, queue: OfflineIntentQueue, executor: IntentExecutor, online: bool = True) -> None:
        self.queue = queue
        self.executor = executor
        self._online = online

    @property
    def online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> list[DrainResult]:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored; draining offline queue")
            return await self.queue.drain_pending(self.executor)
        if not online and was_online:
            logger.info("Connectivity lost; commands will be queued")
        return []
