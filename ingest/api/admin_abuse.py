"""Operator endpoints for the in-memory abuse-prevention state."""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, field_validator

from ingest.core.auth import require_cron_secret
from ingest.core.config import BUCKET_LIMITS, get_rate_limit
from ingest.core.logging import short_hash
from ingest.core.metrics import ratelimit_keys_active
from ingest.deps import IngestContainer, get_container

logger = logging.getLogger("ingest")

router = APIRouter(prefix="/admin/abuse", tags=["admin"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _config_summary(container: IngestContainer) -> dict:
    cfg = container.settings
    return {
        "strategy": cfg.RATE_LIMIT_STRATEGY,
        "limits": {bucket: get_rate_limit(bucket, cfg).limit for bucket in BUCKET_LIMITS},
        "circuitBreaker": {
            "ipQpsMax": container.breaker.ip_qps_max,
            "banSeconds": container.breaker.ban_seconds,
            "windowSeconds": container.breaker.window_seconds,
        },
        "burst": {"maxIdenticalEventsPerMin": container.burst.max_per_window},
        "view_dedupe_window_ms": cfg.VIEW_DEDUPE_WINDOW_MS,
        "anomaly_warning_threshold": cfg.ANOMALY_WARNING_THRESHOLD,
    }


@router.get("/stats")
def abuse_stats(caller: str = Depends(require_cron_secret), container: IngestContainer = Depends(get_container)):
    stats = {
        "timestamp": _now_iso(),
        "rate_limit": container.limiter.stats(),
        "circuit_breaker": container.breaker.stats(),
        "view_dedupe": container.dedupe.stats(),
        "burst": container.burst.stats(),
        "config": _config_summary(container),
    }
    if hasattr(container.scorer, "stats"):
        stats["anomaly"] = container.scorer.stats()
    ratelimit_keys_active.set(stats["rate_limit"]["keys"])
    return stats


@router.get("/banned-ips")
def banned_ips(caller: str = Depends(require_cron_secret), container: IngestContainer = Depends(get_container)):
    banned = container.breaker.banned_ips()
    return {"bannedIPs": banned, "totalBanned": len(banned), "timestamp": _now_iso()}


class UnbanRequest(BaseModel):
    ip_hash: str = Field(alias="ipHash", min_length=8, max_length=128)


@router.post("/unban-ip")
def unban_ip(
    body: UnbanRequest,
    caller: str = Depends(require_cron_secret),
    container: IngestContainer = Depends(get_container),
):
    lifted = container.breaker.unban(body.ip_hash)
    if not lifted:
        return {"success": False, "message": "IP not found or not currently banned"}
    logger.warning("admin.ip_unbanned", extra={"actor": caller, "ip_hash": short_hash(body.ip_hash), "lifted": lifted})
    container.audit.record("admin.unban_ip", actor=caller, payload={"ip_hash": short_hash(body.ip_hash), "lifted": lifted})
    return {"success": True, "message": f"IP {short_hash(body.ip_hash)}... unbanned successfully", "lifted": lifted}


@router.post("/clear-rate-limits")
def clear_rate_limits(caller: str = Depends(require_cron_secret), container: IngestContainer = Depends(get_container)):
    container.limiter.clear()
    container.dedupe.clear()
    container.burst.clear()
    logger.warning("admin.rate_limits_cleared", extra={"actor": caller})
    container.audit.record("admin.clear_rate_limits", actor=caller)
    return {"success": True, "timestamp": _now_iso()}


@router.get("/anomalies")
def anomalies(
    limit: int = Query(50, ge=1, le=200),
    threshold: float = Query(0.5, ge=0.0, le=1.0),
    caller: str = Depends(require_cron_secret),
    container: IngestContainer = Depends(get_container),
):
    scorer = container.scorer
    return {
        "stats": scorer.stats() if hasattr(scorer, "stats") else {},
        "threshold": threshold,
        "limit": limit,
        "recentAnomalies": scorer.recent_anomalies(threshold, limit) if hasattr(scorer, "recent_anomalies") else [],
        "timestamp": _now_iso(),
    }


class CircuitBreakerUpdate(BaseModel):
    ip_qps_max: Optional[PositiveFloat] = Field(default=None, alias="ipQpsMax")
    ban_seconds: Optional[PositiveInt] = Field(default=None, alias="banSeconds")


class BurstUpdate(BaseModel):
    max_identical_events_per_min: Optional[PositiveInt] = Field(default=None, alias="maxIdenticalEventsPerMin")


class AbuseConfigUpdate(BaseModel):
    limits: Dict[str, PositiveInt] = Field(default_factory=dict)
    circuit_breaker: Optional[CircuitBreakerUpdate] = Field(default=None, alias="circuitBreaker")
    burst: Optional[BurstUpdate] = None

    @field_validator("limits")
    @classmethod
    def known_buckets(cls, value: Dict[str, int]) -> Dict[str, int]:
        unknown = sorted(set(value) - set(BUCKET_LIMITS))
        if unknown:
            raise ValueError(f"unknown buckets: {', '.join(unknown)}")
        return value


@router.post("/config")
def update_config(
    body: AbuseConfigUpdate,
    caller: str = Depends(require_cron_secret),
    container: IngestContainer = Depends(get_container),
):
    """Tune limits at runtime. Changes live in this process only."""
    cfg = container.settings
    if body.limits:
        cfg.RATE_LIMIT_OVERRIDES = {**cfg.RATE_LIMIT_OVERRIDES, **body.limits}
    if body.circuit_breaker is not None:
        container.breaker.configure(
            ip_qps_max=body.circuit_breaker.ip_qps_max,
            ban_seconds=body.circuit_breaker.ban_seconds,
        )
    if body.burst is not None and body.burst.max_identical_events_per_min is not None:
        container.burst.set_limit(body.burst.max_identical_events_per_min)
        cfg.MAX_IDENTICAL_EVENTS_PER_MINUTE = body.burst.max_identical_events_per_min

    changed = {
        "limits": sorted(body.limits),
        "circuitBreaker": sorted(body.circuit_breaker.model_dump(exclude_none=True, by_alias=True)) if body.circuit_breaker else [],
        "burst": sorted(body.burst.model_dump(exclude_none=True, by_alias=True)) if body.burst else [],
    }
    logger.warning("admin.abuse_config_updated", extra={"actor": caller, "changed": changed})
    container.audit.record("admin.abuse_config", actor=caller, payload=changed)
    return {"success": True, "message": "Configuration updated successfully", "config": _config_summary(container)}


@router.get("/health")
def abuse_health(caller: str = Depends(require_cron_secret), container: IngestContainer = Depends(get_container)):
    scorer_stats = container.scorer.stats() if hasattr(container.scorer, "stats") else {}
    return {
        "status": "healthy",
        "timestamp": _now_iso(),
        "systems": {
            "rateLimit": {"status": "healthy", "keys": container.limiter.stats()["keys"]},
            "circuitBreaker": {"status": "healthy", "openCircuits": container.breaker.stats()["open"]},
            "viewDedupe": {"status": "healthy", "entries": container.dedupe.stats()["entries"]},
            "burst": {"status": "healthy", "entries": container.burst.stats()["entries"]},
            "anomalyDetection": {"status": "healthy", "identities": scorer_stats.get("identities", 0)},
            "sweeper": {"status": "healthy" if container.sweeper.running else "stopped"},
        },
    }
