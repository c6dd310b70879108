"""In-memory progress of sync runs, polled by status endpoints.

One ``SyncRunState`` per run kind per process. Only the active run mutates
it; pollers read ``snapshot()`` copies.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

MAX_LOGS = 300

logger = logging.getLogger(__name__)


@dataclass
class SyncRunState:
    kind: str
    running: bool = False
    total: int = 0
    processed: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    counters: dict[str, int] = field(default_factory=dict)
    logs: deque = field(default_factory=lambda: deque(maxlen=MAX_LOGS))

    def try_start(self) -> bool:
        """Claim the run slot. False (state untouched) if a run is already active."""
        if self.running:
            return False
        self.running = True
        self.total = 0
        self.processed = 0
        self.started_at = datetime.utcnow()
        self.finished_at = None
        self.error = None
        self.counters = {}
        self.logs.clear()
        return True

    def finish(self, error: str | None = None) -> None:
        self.error = error
        self.finished_at = datetime.utcnow()
        self.running = False

    def bump(self, counter: str, by: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + by

    def log(self, message: str, level: str = "info") -> None:
        self.logs.append({
            "ts": datetime.utcnow().isoformat(),
            "level": level,
            "message": message,
        })
        logger.log(logging.getLevelName(level.upper()), "[%s] %s", self.kind, message)

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.processed / self.total * 100, 2)

    def snapshot(self) -> dict:
        return {
            "kind": self.kind,
            "running": self.running,
            "total": self.total,
            "processed": self.processed,
            "percent": self.percent,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            **self.counters,
            "logs": list(self.logs),
        }


transfer_sync_state = SyncRunState("transfers")
balance_sync_state = SyncRunState("balances")
