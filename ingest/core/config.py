import logging
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Shared secrets for server-to-server callers
    INGEST_APP_TOKEN: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    # Privacy-preserving identity hashing (distinct salts per category)
    ABUSE_IP_SALT: str = "dev-ip-salt-change-in-production"
    ABUSE_UA_SALT: str = "dev-ua-salt-change-in-production"

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STRATEGY: str = "sliding"  # sliding | token
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_EVENTS_PER_IP: int = 60
    RATE_LIMIT_SWEEP_INTERVAL_S: float = 60.0
    RATE_LIMIT_HORIZON_MS: int = 24 * 60 * 60 * 1000
    # Runtime per-bucket overrides set through /admin/abuse/config
    RATE_LIMIT_OVERRIDES: Dict[str, int] = {}

    # Per-IP circuit breaker on /ingest/*
    CIRCUIT_BREAKER_ENABLED: bool = True
    CIRCUIT_BREAKER_IP_QPS_MAX: float = 25.0
    CIRCUIT_BREAKER_BAN_SECONDS: int = 300
    CIRCUIT_BREAKER_WINDOW_SECONDS: int = 5

    # Ingestion guards
    VIEW_DEDUPE_WINDOW_MS: int = 10 * 60 * 1000
    MAX_IDENTICAL_EVENTS_PER_MINUTE: int = 20
    BURST_WINDOW_MS: int = 60_000
    ANOMALY_WARNING_THRESHOLD: float = 0.5

    # Rollup
    ROLLUP_DAYS_BACK: int = 7
    TRENDING_DECAY_LAMBDA: float = 0.25
    MAX_VIEWS_PER_IP_PER_RULE_PER_DAY: int = 5
    MAX_EVENTS_PER_IP_PER_MINUTE: int = 20
    ROLLUP_ALL_WEEKDAY: int = 6  # date.weekday(): Monday=0 .. Sunday=6
    LEADERBOARD_GLOBAL_LIMIT: int = 100
    LEADERBOARD_SCOPED_LIMIT: int = 50
    LEADERBOARD_SCOPED_MAX_REFS: int = 5
    LEADERBOARD_SCOPED_MIN_RULES: int = 10

    # Audit logging
    AUDIT_ENABLED: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_ms: int
    weight: int = 1


# Per-minute limits per bucket. eventsPerIpPerMin is overridable through
# RATE_LIMIT_EVENTS_PER_IP; the rest are fixed policy.
BUCKET_LIMITS: Dict[str, int] = {
    "commentsPerUserPerMin": 6,
    "votesPerUserPerMin": 20,
    "rulesCreatePerUserPerMin": 10,
    "donationsCreatePerUserPerMin": 10,
    "searchPerIpPerMin": 120,
    "eventsPerIpPerMin": 60,
    "crawlPerIpPerMin": 10,
    "webhookPerIpPerMin": 30,
    "adminOpsPerUserPerMin": 30,
    "claimsPerUserPerHour": 3,
}

_HOURLY_BUCKETS = {"claimsPerUserPerHour"}


def get_rate_limit(bucket: str, settings_obj: Optional[Settings] = None) -> RateLimitRule:
    """Resolve the rule for a named bucket. Unknown buckets raise KeyError."""
    cfg = settings_obj or settings
    limit = BUCKET_LIMITS[bucket]
    if bucket == "eventsPerIpPerMin":
        limit = cfg.RATE_LIMIT_EVENTS_PER_IP
    limit = cfg.RATE_LIMIT_OVERRIDES.get(bucket, limit)
    window_ms = 60 * 60 * 1000 if bucket in _HOURLY_BUCKETS else cfg.RATE_LIMIT_WINDOW_MS
    return RateLimitRule(limit=limit, window_ms=window_ms)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("ingest")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "INGEST_APP_TOKEN",
        "CRON_SECRET",
    ]

    problems = [f"missing {key}" for key in required_keys if not getattr(cfg, key, None)]

    if str(cfg.ENV).lower() == "production":
        for key in ("ABUSE_IP_SALT", "ABUSE_UA_SALT"):
            if "dev-" in (getattr(cfg, key, "") or ""):
                problems.append(f"{key} must be set in production")

    if cfg.ABUSE_IP_SALT == cfg.ABUSE_UA_SALT:
        problems.append("ABUSE_IP_SALT and ABUSE_UA_SALT must differ")

    for key in ("RATE_LIMIT_EVENTS_PER_IP", "RATE_LIMIT_WINDOW_MS", "MAX_IDENTICAL_EVENTS_PER_MINUTE", "ROLLUP_DAYS_BACK", *(
        "CIRCUIT_BREAKER_IP_QPS_MAX",
        "CIRCUIT_BREAKER_BAN_SECONDS",
        "CIRCUIT_BREAKER_WINDOW_SECONDS",
    )):
        if getattr(cfg, key) <= 0:
            problems.append(f"{key} must be positive")

    if problems:
        message = f"Configuration problems: {', '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
