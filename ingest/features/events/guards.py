"""
Short-window suppression applied before events are persisted.

- ViewDedupeCache: one counted VIEW per (ipHash, ruleId) per dedupe window.
- BurstGuard: at most N identical events per (type, ruleId|"global", ipHash)
  per burst window.

Both are bounded, swept, in-memory maps. Each instance owns one lock that is
held across every read-modify-write and across sweeps.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ingest.core.ratelimit import now_ms

GLOBAL_RULE = "global"


class ViewDedupeCache:
    def __init__(self, window_ms: int, time_fn: Callable[[], int] = now_ms):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = window_ms
        self.time_fn = time_fn
        self._last_seen: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def should_suppress(self, ip_hash: str, rule_id: Optional[str]) -> bool:
        """True when a view for this (ip, rule) was already counted in the window.

        A suppressed view does not re-stamp the entry, so the window always
        runs from the last *counted* view.
        """
        if not rule_id:
            return False
        key = (ip_hash, rule_id)
        with self._lock:
            now = self.time_fn()
            last = self._last_seen.get(key)
            if last is not None and now - last < self.window_ms:
                return True
            self._last_seen[key] = now
            return False

    def sweep(self, now: Optional[int] = None) -> int:
        with self._lock:
            current = self.time_fn() if now is None else now
            stale = [key for key, ts in self._last_seen.items() if current - ts >= self.window_ms]
            for key in stale:
                del self._last_seen[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._last_seen.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._last_seen), "window_ms": self.window_ms}


@dataclass
class BurstEntry:
    count: int
    first_seen: int


@dataclass(frozen=True)
class BurstDecision:
    allowed: int
    blocked: int
    window_count: int


class BurstGuard:
    def __init__(self, max_per_window: int, window_ms: int = 60_000, time_fn: Callable[[], int] = now_ms):
        if max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        self.max_per_window = max_per_window
        self.window_ms = window_ms
        self.time_fn = time_fn
        self._entries: Dict[Tuple[str, str, str], BurstEntry] = {}
        self._lock = threading.Lock()

    def admit(self, event_type: str, rule_id: Optional[str], ip_hash: str, count: int = 1) -> BurstDecision:
        """Admit up to the remaining allowance for this identity in the current window."""
        if count < 0:
            raise ValueError("count must be >= 0")
        key = (event_type, rule_id or GLOBAL_RULE, ip_hash)
        with self._lock:
            now = self.time_fn()
            entry = self._entries.get(key)
            if entry is None or now - entry.first_seen >= self.window_ms:
                entry = BurstEntry(count=0, first_seen=now)
                self._entries[key] = entry
            remaining = max(0, self.max_per_window - entry.count)
            allowed = min(count, remaining)
            entry.count += count
            return BurstDecision(allowed=allowed, blocked=count - allowed, window_count=entry.count)

    def set_limit(self, max_per_window: int) -> None:
        if max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        with self._lock:
            self.max_per_window = max_per_window

    def sweep(self, now: Optional[int] = None) -> int:
        with self._lock:
            current = self.time_fn() if now is None else now
            stale = [key for key, entry in self._entries.items() if current - entry.first_seen >= self.window_ms]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_per_window": self.max_per_window,
                "window_ms": self.window_ms,
            }
