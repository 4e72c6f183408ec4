"""
Explicit wiring for the ingest service.

Everything with process lifetime (rate-limit store, guards, anomaly scorer,
audit worker, sweeper) is built here and hung off ``app.state.container``.
Nothing is a module-level singleton, so tests build their own container.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from ingest.core.circuit_breaker import CircuitBreaker
from ingest.core.config import Settings, settings
from ingest.core.database import create_all_tables, get_database_url, get_session_factory, init_engine
from ingest.core.memory import MemoryDatabase
from ingest.core.ratelimit import RateLimiter, build_store, now_ms
from ingest.core.sweeper import PeriodicSweeper
from ingest.features.audit.service import AuditLogger, memory_sink, sql_sink
from ingest.features.events.anomaly import AnomalyScorer, HeuristicAnomalyScorer
from ingest.features.events.guards import BurstGuard, ViewDedupeCache
from ingest.features.events.service import IngestionPipeline
from ingest.features.events.store import EventStore, InMemoryEventStore, SqlEventStore
from ingest.features.rollup.repository import InMemoryRollupRepository, RollupRepository, SqlRollupRepository
from ingest.features.rollup.service import RollupEngine

logger = logging.getLogger("ingest")


@dataclass
class IngestContainer:
    settings: Settings
    limiter: RateLimiter
    breaker: CircuitBreaker
    dedupe: ViewDedupeCache
    burst: BurstGuard
    scorer: AnomalyScorer
    pipeline: IngestionPipeline
    rollup: RollupEngine
    audit: AuditLogger
    sweeper: PeriodicSweeper
    memory_db: Optional[MemoryDatabase] = None

    def start(self) -> None:
        self.audit.start()
        self.sweeper.start()

    def shutdown(self) -> None:
        self.sweeper.shutdown()
        self.audit.shutdown()


def build_container(
    settings_obj: Optional[Settings] = None,
    *,
    memory_db: Optional[MemoryDatabase] = None,
    event_store: Optional[EventStore] = None,
    rollup_repository: Optional[RollupRepository] = None,
    scorer: Optional[AnomalyScorer] = None,
    time_fn: Callable[[], int] = now_ms,
) -> IngestContainer:
    """Build the service graph. Without DATABASE_URL everything is in memory."""
    cfg = settings_obj or settings

    audit_sink = None
    if event_store is None or rollup_repository is None:
        if memory_db is None and get_database_url():
            init_engine()
            create_all_tables()
            factory = get_session_factory()
            event_store = event_store or SqlEventStore(factory)
            rollup_repository = rollup_repository or SqlRollupRepository(factory)
            audit_sink = sql_sink(factory)
        else:
            memory_db = memory_db or MemoryDatabase()
            event_store = event_store or InMemoryEventStore(memory_db)
            rollup_repository = rollup_repository or InMemoryRollupRepository(memory_db)
            logger.warning("DATABASE_URL not configured; using in-memory storage")
    if audit_sink is None:
        memory_db = memory_db or MemoryDatabase()
        audit_sink = memory_sink(memory_db)

    limiter = RateLimiter(build_store(cfg, time_fn=time_fn))
    breaker = CircuitBreaker(
        cfg.CIRCUIT_BREAKER_IP_QPS_MAX,
        cfg.CIRCUIT_BREAKER_BAN_SECONDS,
        cfg.CIRCUIT_BREAKER_WINDOW_SECONDS,
        horizon_ms=cfg.RATE_LIMIT_HORIZON_MS,
        time_fn=time_fn,
    )
    dedupe = ViewDedupeCache(cfg.VIEW_DEDUPE_WINDOW_MS, time_fn=time_fn)
    burst = BurstGuard(cfg.MAX_IDENTICAL_EVENTS_PER_MINUTE, window_ms=cfg.BURST_WINDOW_MS, time_fn=time_fn)
    scorer = scorer or HeuristicAnomalyScorer(time_fn=time_fn)

    pipeline = IngestionPipeline(
        event_store,
        dedupe=dedupe,
        burst=burst,
        scorer=scorer,
        settings_obj=cfg,
        time_fn=time_fn,
    )
    rollup = RollupEngine(rollup_repository, settings_obj=cfg)

    targets = {"rate_limit": limiter, "circuit_breaker": breaker, "view_dedupe": dedupe, "burst": burst}
    if hasattr(scorer, "sweep"):
        targets["anomaly"] = scorer

    return IngestContainer(
        settings=cfg,
        limiter=limiter,
        breaker=breaker,
        dedupe=dedupe,
        burst=burst,
        scorer=scorer,
        pipeline=pipeline,
        rollup=rollup,
        audit=AuditLogger(audit_sink, enabled=cfg.AUDIT_ENABLED),
        sweeper=PeriodicSweeper(cfg.RATE_LIMIT_SWEEP_INTERVAL_S, targets),
        memory_db=memory_db,
    )


def get_container(request: Request) -> IngestContainer:
    return request.app.state.container
