"""
Background sweeps for the in-memory abuse-prevention stores.

PeriodicSweeper calls ``sweep()`` on every target every ``interval_s`` on a
daemon thread. Targets take their own locks, so a sweep never races a
concurrent consume/check. A failing target is logged and skipped.
"""

import logging
import threading
from typing import Dict, Iterable, Optional, Protocol

logger = logging.getLogger("ingest.sweeper")


class Sweepable(Protocol):
    def sweep(self) -> int: ...


class PeriodicSweeper:
    def __init__(self, interval_s: float, targets: Dict[str, Sweepable]):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = interval_s
        self.targets = dict(targets)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, names: Optional[Iterable[str]] = None) -> Dict[str, int]:
        removed: Dict[str, int] = {}
        for name in names or list(self.targets):
            try:
                removed[name] = self.targets[name].sweep()
            except Exception as exc:
                logger.error("sweeper.target_failed", extra={"target": name, "error": repr(exc)})
                removed[name] = 0
        if any(removed.values()):
            logger.debug("sweeper.swept", extra={"removed": removed})
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.sweep_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="abuse-sweeper", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
