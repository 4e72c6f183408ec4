"""
In-memory rate limiting.

- Sliding-window store (default) and token-bucket store behind one interface.
- Keys are composed as ``bucket:userId:ipHash:uaHash:extra`` with ``-`` placeholders.
- Stores are explicitly constructed and injected; each guards its state with
  one lock so sweeps never race with consume/check.
- ``RateLimiter.limit`` fails open: internal errors allow the request.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from ingest.core.config import RateLimitRule, Settings, settings
from ingest.core.logging import log_event
from ingest.core.metrics import ratelimit_block_total, ratelimit_fail_open_total, ratelimit_keys_active

logger = logging.getLogger("ingest.ratelimit")

PLACEHOLDER = "-"
MIN_RETRY_AFTER_MS = 1000
DEFAULT_HORIZON_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BucketKey:
    bucket: str
    user_id: Optional[str] = None
    ip_hash: Optional[str] = None
    ua_hash: Optional[str] = None
    extra: Optional[str] = None


@dataclass(frozen=True)
class RateLimitOutcome:
    ok: bool
    remaining: int
    reset_ms: int
    retry_after_ms: int = 0


def make_key(key: BucketKey) -> str:
    parts = (key.bucket, key.user_id, key.ip_hash, key.ua_hash, key.extra)
    return ":".join(part if part else PLACEHOLDER for part in parts)


class RateLimitStore(Protocol):
    def consume(self, key: str, weight: int, window_ms: int, limit: int) -> RateLimitOutcome: ...

    def check(self, key: str, window_ms: int, limit: int) -> Optional[Tuple[int, int]]: ...

    def sweep(self, now: Optional[int] = None) -> int: ...

    def clear(self) -> None: ...

    def stats(self) -> Dict[str, int]: ...


class SlidingWindowStore:
    """Per-key timestamp log. A hit counts for exactly ``window_ms``."""

    def __init__(self, time_fn: Callable[[], int] = now_ms, horizon_ms: int = DEFAULT_HORIZON_MS):
        self.time_fn = time_fn
        self.horizon_ms = horizon_ms
        self._hits: Dict[str, Deque[int]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _prune(hits: Deque[int], now: int, window_ms: int) -> None:
        cutoff = now - window_ms
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def consume(self, key: str, weight: int, window_ms: int, limit: int) -> RateLimitOutcome:
        if weight < 1:
            raise ValueError("weight must be >= 1")
        with self._lock:
            now = self.time_fn()
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
            self._prune(hits, now, window_ms)

            if len(hits) + weight > limit:
                if hits:
                    until_oldest_expires = hits[0] + window_ms - now
                else:
                    # weight alone exceeds limit; nothing will ever free up
                    until_oldest_expires = window_ms
                return RateLimitOutcome(
                    ok=False,
                    remaining=max(0, limit - len(hits)),
                    reset_ms=max(0, until_oldest_expires),
                    retry_after_ms=max(MIN_RETRY_AFTER_MS, until_oldest_expires),
                )

            hits.extend([now] * weight)
            return RateLimitOutcome(
                ok=True,
                remaining=limit - len(hits),
                reset_ms=max(0, hits[0] + window_ms - now),
            )

    def check(self, key: str, window_ms: int, limit: int) -> Optional[Tuple[int, int]]:
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                return None
            now = self.time_fn()
            cutoff = now - window_ms
            live = [ts for ts in hits if ts > cutoff]
            reset_ms = (live[0] + window_ms - now) if live else 0
            return max(0, limit - len(live)), max(0, reset_ms)

    def sweep(self, now: Optional[int] = None) -> int:
        """Drop keys whose newest hit is older than the horizon."""
        with self._lock:
            current = self.time_fn() if now is None else now
            cutoff = current - self.horizon_ms
            stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
            for key in stale:
                del self._hits[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "keys": len(self._hits),
                "timestamps": sum(len(hits) for hits in self._hits.values()),
            }


class TokenBucket:
    """Refills ``capacity`` tokens per ``window_ms``, continuously."""

    def __init__(self, capacity: int, window_ms: int, now: int):
        self.capacity = max(1, capacity)
        self.window_ms = max(1, window_ms)
        self.tokens = float(self.capacity)
        self.last_refill = now

    def refill(self, now: int) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.capacity / self.window_ms)
        self.last_refill = now

    def ms_until(self, tokens: float) -> int:
        missing = tokens - self.tokens
        if missing <= 0:
            return 0
        return math.ceil(round(missing * self.window_ms / self.capacity, 6))


class TokenBucketStore:
    """Continuous refill at ``limit / (window_ms / 1000)`` tokens per second."""

    def __init__(self, time_fn: Callable[[], int] = now_ms, horizon_ms: int = DEFAULT_HORIZON_MS):
        self.time_fn = time_fn
        self.horizon_ms = horizon_ms
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _bucket_for(self, key: str, window_ms: int, limit: int, now: int) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity=limit, window_ms=window_ms, now=now)
            self._buckets[key] = bucket
        return bucket

    def consume(self, key: str, weight: int, window_ms: int, limit: int) -> RateLimitOutcome:
        if weight < 1:
            raise ValueError("weight must be >= 1")
        with self._lock:
            now = self.time_fn()
            bucket = self._bucket_for(key, window_ms, limit, now)
            bucket.refill(now)
            if bucket.tokens < weight:
                wait = bucket.ms_until(weight)
                return RateLimitOutcome(
                    ok=False,
                    remaining=int(bucket.tokens),
                    reset_ms=bucket.ms_until(bucket.capacity),
                    retry_after_ms=max(MIN_RETRY_AFTER_MS, wait),
                )
            bucket.tokens -= weight
            return RateLimitOutcome(
                ok=True,
                remaining=int(bucket.tokens),
                reset_ms=bucket.ms_until(bucket.capacity),
            )

    def check(self, key: str, window_ms: int, limit: int) -> Optional[Tuple[int, int]]:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return None
            bucket.refill(self.time_fn())
            return int(bucket.tokens), bucket.ms_until(bucket.capacity)

    def sweep(self, now: Optional[int] = None) -> int:
        with self._lock:
            current = self.time_fn() if now is None else now
            cutoff = current - self.horizon_ms
            stale = [key for key, bucket in self._buckets.items() if bucket.last_refill <= cutoff]
            for key in stale:
                del self._buckets[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"keys": len(self._buckets), "timestamps": 0}


def build_store(settings_obj: Optional[Settings] = None, time_fn: Callable[[], int] = now_ms) -> RateLimitStore:
    cfg = settings_obj or settings
    strategy = str(cfg.RATE_LIMIT_STRATEGY).lower()
    if strategy == "token":
        return TokenBucketStore(time_fn=time_fn, horizon_ms=cfg.RATE_LIMIT_HORIZON_MS)
    if strategy != "sliding":
        raise ValueError(f"Unknown RATE_LIMIT_STRATEGY: {cfg.RATE_LIMIT_STRATEGY}")
    return SlidingWindowStore(time_fn=time_fn, horizon_ms=cfg.RATE_LIMIT_HORIZON_MS)


class RateLimiter:
    def __init__(self, store: RateLimitStore):
        self.store = store

    def limit(self, bucket_key: BucketKey, rule: RateLimitRule) -> RateLimitOutcome:
        """Consume from the bucket; never raises."""
        try:
            outcome = self.store.consume(make_key(bucket_key), rule.weight, rule.window_ms, rule.limit)
        except Exception as exc:
            ratelimit_fail_open_total.inc(labels={"bucket": bucket_key.bucket})
            log_event(
                "error",
                "ratelimit.fail_open",
                ip_hash=bucket_key.ip_hash,
                error_code="ratelimit_internal",
                extra={"bucket": bucket_key.bucket, "error": repr(exc)},
            )
            return RateLimitOutcome(ok=True, remaining=rule.limit, reset_ms=0)

        if not outcome.ok:
            ratelimit_block_total.inc(labels={"bucket": bucket_key.bucket})
        return outcome

    def check(self, bucket_key: BucketKey, rule: RateLimitRule) -> Optional[Tuple[int, int]]:
        return self.store.check(make_key(bucket_key), rule.window_ms, rule.limit)

    def sweep(self) -> int:
        removed = self.store.sweep()
        ratelimit_keys_active.set(self.store.stats()["keys"])
        return removed

    def clear(self) -> None:
        self.store.clear()
        ratelimit_keys_active.set(0)

    def stats(self) -> Dict[str, int]:
        return self.store.stats()
