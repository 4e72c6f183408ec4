"""
Anomaly scoring for incoming event streams.

The pipeline only depends on the AnomalyScorer protocol: one awaited call per
batch returning an overall score in [0, 1]. Scores above the configured
threshold are logged, never blocked.

HeuristicAnomalyScorer is the default implementation. It keeps a bounded,
per-identity history and blends four signals:
- burst: events in the last minute relative to a baseline
- duplication: share of repeated (type, rule, ip) events in the last minute
- entropy: low user-agent diversity
- velocity: shrinking gaps between consecutive events over the whole history

Scores at or above ``record_threshold`` are kept in a short ring for the
admin anomalies view.
"""

import math
import threading
from collections import Counter, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ingest.core.logging import short_hash
from ingest.core.ratelimit import now_ms
from ingest.features.events.models import EnrichedEvent

MINUTE_MS = 60_000
DAY_MS = 24 * 60 * 60 * 1000


class AnomalyScore(BaseModel):
    overall: float = Field(ge=0.0, le=1.0)
    components: Dict[str, float] = Field(default_factory=dict)
    metadata: Dict[str, float] = Field(default_factory=dict)


class AnomalyScorer(Protocol):
    async def score(self, identity_key: str, event: EnrichedEvent) -> AnomalyScore: ...


class NullAnomalyScorer:
    async def score(self, identity_key: str, event: EnrichedEvent) -> AnomalyScore:
        return AnomalyScore(overall=0.0)


@dataclass(frozen=True)
class _Seen:
    ts: int
    signature: str
    ua_hash: str


def shannon_entropy(text: str) -> float:
    if not text:
        return 0.0
    total = len(text)
    return -sum((n / total) * math.log2(n / total) for n in Counter(text).values())


class HeuristicAnomalyScorer:
    def __init__(
        self,
        *,
        baseline_per_min: float = 5.0,
        weights: Optional[Dict[str, float]] = None,
        max_history: int = 1000,
        max_recorded: int = 200,
        record_threshold: float = 0.5,
        history_ms: int = DAY_MS,
        time_fn: Callable[[], int] = now_ms,
    ):
        self.baseline_per_min = baseline_per_min
        self.weights = weights or {"burst": 0.4, "duplication": 0.3, "entropy": 0.1, "velocity": 0.2}
        self.max_history = max_history
        self.history_ms = history_ms
        self.time_fn = time_fn
        self.record_threshold = record_threshold
        self._history: Dict[str, Deque[_Seen]] = {}
        self._recorded: Deque[Dict[str, object]] = deque(maxlen=max_recorded)
        self._lock = threading.Lock()

    def _burst(self, per_min: int) -> float:
        ratio = per_min / self.baseline_per_min if self.baseline_per_min > 0 else float(per_min)
        if ratio <= 1:
            return 0.0
        if ratio <= 3:
            return (ratio - 1) / 2
        return 1.0

    @staticmethod
    def _duplication(recent) -> float:
        if not recent:
            return 0.0
        counts = Counter(seen.signature for seen in recent)
        repeats = sum(n - 1 for n in counts.values() if n > 1)
        return min(1.0, repeats / len(recent))

    @staticmethod
    def _ua_entropy(recent) -> float:
        if not recent:
            return 0.0
        uas = Counter(seen.ua_hash for seen in recent)
        if len(uas) == 1:
            return shannon_entropy(next(iter(uas)))
        total = len(recent)
        return -sum((n / total) * math.log2(n / total) for n in uas.values())

    @staticmethod
    def _velocity(timestamps: List[int]) -> float:
        """Average relative shrink of the gap between consecutive events."""
        if len(timestamps) < 3:
            return 0.0
        ordered = sorted(timestamps)
        gaps = [b - a for a, b in zip(ordered, ordered[1:])]
        acceleration = 0.0
        for prev, curr in zip(gaps, gaps[1:]):
            if curr < prev:
                acceleration += (prev - curr) / prev
        return min(1.0, acceleration / len(gaps))

    async def score(self, identity_key: str, event: EnrichedEvent) -> AnomalyScore:
        now = self.time_fn()
        signature = ":".join(event.burst_group)
        with self._lock:
            history = self._history.setdefault(identity_key, deque(maxlen=self.max_history))
            history.append(_Seen(ts=now, signature=signature, ua_hash=event.ua_hash))
            while history and history[0].ts <= now - self.history_ms:
                history.popleft()
            recent = [seen for seen in history if seen.ts > now - MINUTE_MS]
            timestamps = [seen.ts for seen in history]

        burst = self._burst(len(recent))
        duplication = self._duplication(recent)
        ua_entropy = self._ua_entropy(recent)
        entropy = max(0.0, 1 - ua_entropy / 4)
        velocity = self._velocity(timestamps)

        overall = (
            self.weights.get("burst", 0.0) * burst
            + self.weights.get("duplication", 0.0) * duplication
            + self.weights.get("entropy", 0.0) * entropy
            + self.weights.get("velocity", 0.0) * velocity
        )
        result = AnomalyScore(
            overall=min(1.0, max(0.0, overall)),
            components={"burst": burst, "duplication": duplication, "entropy": entropy, "velocity": velocity},
            metadata={
                "events_per_min": float(len(recent)),
                "baseline": self.baseline_per_min,
                "ua_entropy": ua_entropy,
            },
        )
        if result.overall >= self.record_threshold:
            with self._lock:
                self._recorded.append(
                    {
                        "identity": short_hash(identity_key),
                        "type": event.type.value,
                        "ruleId": event.rule_id,
                        "overall": round(result.overall, 3),
                        "components": {name: round(value, 3) for name, value in result.components.items()},
                        "ts": now,
                    }
                )
        return result

    def recent_anomalies(self, threshold: float = 0.5, limit: int = 50) -> List[Dict[str, object]]:
        """Most recent recorded scores at or above ``threshold``, newest first."""
        with self._lock:
            recorded = list(self._recorded)
        matching = [entry for entry in reversed(recorded) if entry["overall"] >= threshold]
        return matching[:limit]

    def sweep(self, now: Optional[int] = None) -> int:
        with self._lock:
            current = self.time_fn() if now is None else now
            stale = [key for key, history in self._history.items() if not history or history[-1].ts <= current - self.history_ms]
            for key in stale:
                del self._history[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
            self._recorded.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "identities": len(self._history),
                "events": sum(len(history) for history in self._history.values()),
                "recorded": len(self._recorded),
            }
