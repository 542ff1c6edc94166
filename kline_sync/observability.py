"""In-memory observability helpers for runtime status."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Optional


class RuntimeObservability:
    """Tracks process start and the last successful kline write per acquisition mode."""

    def __init__(self):
        self.process_started_at = datetime.now(timezone.utc)
        self._last_write: dict[str, datetime] = {}
        self._lock = Lock()

    def mark_sync_success(self, mode: str, timestamp: Optional[datetime] = None):
        """Record a successful write heartbeat for `mode` (history, gap_fill, realtime, backfill)."""
        heartbeat = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc)
        with self._lock:
            self._last_write[mode] = heartbeat

    def seconds_since_last_sync(self, mode: str) -> Optional[float]:
        """Return elapsed seconds since the latest write for `mode`, None if there was none."""
        with self._lock:
            last = self._last_write.get(mode)
        if not last:
            return None
        delta = datetime.now(timezone.utc) - last
        return max(delta.total_seconds(), 0.0)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return {mode: ts.isoformat() for mode, ts in self._last_write.items()}

    def uptime_seconds(self) -> float:
        """Return process uptime in seconds."""
        return (datetime.now(timezone.utc) - self.process_started_at).total_seconds()


observability = RuntimeObservability()
