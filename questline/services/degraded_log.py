"""
questline.services.degraded_log — Ring Buffer of Degraded Propagation Steps
============================================================================

When a step that runs *after* the completion gate fails (XP award on the
redemption path, achievement unlock, leaderboard upsert, audit append) the
request still succeeds with ``degraded=true``.  Each such failure is
recorded here so operators can see it at ``GET /api/admin/degraded`` without
trawling logs.

Each process keeps its own buffer via a module-level singleton.  No
persistence: the durable signal for unpaid awards is the ``paid_at IS NULL``
gate rows that the reconciliation sweep reads, not this buffer.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_CAPACITY = 1000

STEP_AWARD = "award"
STEP_ACHIEVEMENTS = "achievements"
STEP_LEADERBOARD = "leaderboard"
STEP_AUDIT = "audit"
VALID_STEPS = (STEP_AWARD, STEP_ACHIEVEMENTS, STEP_LEADERBOARD, STEP_AUDIT)

# Module-level singleton, one per process
_log: DegradedLog | None = None
_lock = threading.Lock()


class DegradedEntry:
    """One failed propagation step."""
    __slots__ = ("timestamp", "step", "account_id", "source", "source_id", "error")

    def __init__(
        self,
        timestamp: str,
        step: str,
        account_id: str,
        source: str,
        source_id: str,
        error: str,
    ):
        self.timestamp = timestamp
        self.step = step
        self.account_id = account_id
        self.source = source
        self.source_id = source_id
        self.error = error

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "step": self.step,
            "account_id": self.account_id,
            "source": self.source,
            "source_id": self.source_id,
            "error": self.error,
        }


class DegradedLog:
    """Thread-safe ring buffer backed by :class:`collections.deque`."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[DegradedEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(
        self,
        step: str,
        account_id: str,
        source: str,
        source_id: str,
        error: BaseException | str,
    ) -> DegradedEntry:
        if step not in VALID_STEPS:
            raise ValueError(f"Invalid step: {step}. Must be one of {VALID_STEPS}")
        entry = DegradedEntry(
            timestamp=datetime.now(UTC).isoformat(),
            step=step,
            account_id=account_id,
            source=str(source),
            source_id=str(source_id),
            error=f"{type(error).__name__}: {error}" if isinstance(error, BaseException) else error,
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def get_entries(self, tail: int = 200, step: str | None = None) -> list[dict[str, str]]:
        """Return the most recent *tail* entries, optionally for one step."""
        with self._lock:
            snapshot = list(self._entries)

        results = [e.to_dict() for e in snapshot if step is None or e.step == step]
        if tail and len(results) > tail:
            results = results[-tail:]
        return results

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------
def get_degraded_log() -> DegradedLog:
    """Return (or create) the process-global degraded log."""
    global _log
    if _log is None:
        with _lock:
            if _log is None:
                _log = DegradedLog()
    return _log
