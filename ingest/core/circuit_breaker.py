"""
Per-IP circuit breaker.

Requests are tracked per ip hash over a short window. When the request rate
in that window exceeds ``ip_qps_max`` the circuit opens and the ip is banned
for ``ban_seconds``. A ban ends on its own once it expires, or early through
``unban``. Entries idle for a day are dropped by ``sweep``.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ingest.core.logging import short_hash
from ingest.core.metrics import circuit_breaker_trips_total
from ingest.core.ratelimit import DEFAULT_HORIZON_MS, now_ms

logger = logging.getLogger("ingest.circuit_breaker")


@dataclass
class CircuitState:
    request_times: List[int] = field(default_factory=list)
    banned_until: Optional[int] = None
    failure_count: int = 0
    last_failure: Optional[int] = None

    def last_activity(self) -> int:
        return max(
            self.request_times[-1] if self.request_times else 0,
            self.last_failure or 0,
            self.banned_until or 0,
        )


@dataclass(frozen=True)
class CircuitDecision:
    allowed: bool
    retry_after_s: int = 0
    tripped: bool = False


class CircuitBreaker:
    def __init__(
        self,
        ip_qps_max: float = 25.0,
        ban_seconds: int = 300,
        window_seconds: int = 5,
        *,
        horizon_ms: int = DEFAULT_HORIZON_MS,
        time_fn: Callable[[], int] = now_ms,
    ):
        if ip_qps_max <= 0 or ban_seconds <= 0 or window_seconds <= 0:
            raise ValueError("circuit breaker thresholds must be positive")
        self.ip_qps_max = ip_qps_max
        self.ban_seconds = ban_seconds
        self.window_seconds = window_seconds
        self.horizon_ms = horizon_ms
        self.time_fn = time_fn
        self._circuits: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def _open(self, circuit: CircuitState, now: int) -> bool:
        if circuit.banned_until is None:
            return False
        if now >= circuit.banned_until:
            circuit.banned_until = None
            circuit.failure_count = 0
            circuit.request_times = []
            return False
        return True

    def is_open(self, ip_hash: str) -> bool:
        with self._lock:
            circuit = self._circuits.get(ip_hash)
            return circuit is not None and self._open(circuit, self.time_fn())

    def retry_after_s(self, ip_hash: str) -> int:
        with self._lock:
            circuit = self._circuits.get(ip_hash)
            if circuit is None or circuit.banned_until is None:
                return 0
            return max(1, -(-(circuit.banned_until - self.time_fn()) // 1000))

    def record_request(self, ip_hash: str) -> CircuitDecision:
        """Count one request; trips the circuit when the window rate is exceeded."""
        with self._lock:
            now = self.time_fn()
            circuit = self._circuits.setdefault(ip_hash, CircuitState())
            if self._open(circuit, now):
                return CircuitDecision(allowed=False, retry_after_s=max(1, -(-(circuit.banned_until - now) // 1000)))

            window_ms = self.window_seconds * 1000
            circuit.request_times.append(now)
            circuit.request_times = [ts for ts in circuit.request_times if now - ts <= window_ms]

            qps = len(circuit.request_times) / self.window_seconds
            if qps <= self.ip_qps_max:
                return CircuitDecision(allowed=True)

            circuit.banned_until = now + self.ban_seconds * 1000
            circuit.failure_count += 1
            failures = circuit.failure_count

        circuit_breaker_trips_total.inc()
        logger.warning(
            "circuit_breaker.opened",
            extra={
                "ip_hash": short_hash(ip_hash),
                "qps": round(qps, 2),
                "threshold": self.ip_qps_max,
                "ban_seconds": self.ban_seconds,
                "failure_count": failures,
            },
        )
        return CircuitDecision(allowed=False, retry_after_s=self.ban_seconds, tripped=True)

    def record_success(self, ip_hash: str) -> None:
        with self._lock:
            circuit = self._circuits.get(ip_hash)
            if circuit is not None:
                circuit.failure_count = max(0, circuit.failure_count - 1)

    def record_failure(self, ip_hash: str) -> None:
        with self._lock:
            circuit = self._circuits.get(ip_hash)
            if circuit is not None:
                circuit.failure_count += 1
                circuit.last_failure = self.time_fn()

    def unban(self, ip_hash: str) -> int:
        """Lift active bans for a full hash or a hash prefix; returns how many were lifted.

        ``banned_ips`` only exposes short prefixes, so a prefix of at least
        eight characters is accepted.
        """
        if len(ip_hash) < 8:
            return 0
        lifted = 0
        with self._lock:
            for key, circuit in self._circuits.items():
                if key.startswith(ip_hash) and circuit.banned_until is not None:
                    circuit.banned_until = None
                    circuit.failure_count = 0
                    circuit.request_times = []
                    lifted += 1
        return lifted

    def banned_ips(self) -> List[Dict[str, object]]:
        with self._lock:
            now = self.time_fn()
            banned = [
                {"ipHash": short_hash(key), "bannedUntil": circuit.banned_until, "failureCount": circuit.failure_count}
                for key, circuit in self._circuits.items()
                if circuit.banned_until is not None and now < circuit.banned_until
            ]
        return sorted(banned, key=lambda entry: entry["bannedUntil"], reverse=True)

    def configure(self, *, ip_qps_max: Optional[float] = None, ban_seconds: Optional[int] = None) -> None:
        with self._lock:
            if ip_qps_max is not None:
                self.ip_qps_max = ip_qps_max
            if ban_seconds is not None:
                self.ban_seconds = ban_seconds

    def sweep(self, now: Optional[int] = None) -> int:
        with self._lock:
            current = self.time_fn() if now is None else now
            stale = [key for key, circuit in self._circuits.items() if current - circuit.last_activity() > self.horizon_ms]
            for key in stale:
                del self._circuits[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._circuits.clear()

    def stats(self) -> Dict[str, object]:
        with self._lock:
            now = self.time_fn()
            open_circuits = sum(
                1 for circuit in self._circuits.values() if circuit.banned_until is not None and now < circuit.banned_until
            )
            return {
                "circuits": len(self._circuits),
                "open": open_circuits,
                "ip_qps_max": self.ip_qps_max,
                "ban_seconds": self.ban_seconds,
                "window_seconds": self.window_seconds,
            }
