"""
Event ingestion pipeline.

record_events(events, headers):
1. derive (ip_hash, ua_hash) once per batch
2. enrich each event with the hashes and a resolved created_at
3. burst guard per (type, rule|"global", ip) group: first N pass, rest blocked
4. VIEW dedupe per surviving event
5. anomaly score on the first survivor (warning only)
6. batch insert survivors, skipping storage-level duplicates

Guard failures fail open. Anomaly scorer failures are logged and ignored.
Storage failures are logged and re-raised.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ingest.core.config import Settings, settings
from ingest.core.logging import log_event, short_hash
from ingest.core.metrics import ingest_anomalies_total, ingest_events_total
from ingest.core.privacy import request_hashes
from ingest.core.ratelimit import now_ms
from ingest.features.events.anomaly import AnomalyScorer, NullAnomalyScorer
from ingest.features.events.guards import BurstGuard, ViewDedupeCache
from ingest.features.events.models import EnrichedEvent, EventType, IncomingEvent, IngestResult
from ingest.features.events.store import EventStore

logger = logging.getLogger("ingest.events")


class IngestionPipeline:
    def __init__(
        self,
        store: EventStore,
        *,
        dedupe: ViewDedupeCache,
        burst: BurstGuard,
        scorer: Optional[AnomalyScorer] = None,
        settings_obj: Optional[Settings] = None,
        time_fn: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.dedupe = dedupe
        self.burst = burst
        self.scorer = scorer or NullAnomalyScorer()
        self.settings = settings_obj or settings
        self.time_fn = time_fn

    def _apply_burst_guard(self, enriched: List[EnrichedEvent]) -> Tuple[List[EnrichedEvent], int]:
        groups: "OrderedDict[tuple, List[EnrichedEvent]]" = OrderedDict()
        for event in enriched:
            groups.setdefault(event.burst_group, []).append(event)

        admitted: List[EnrichedEvent] = []
        blocked = 0
        for (event_type, rule_ref, ip_hash), members in groups.items():
            try:
                decision = self.burst.admit(event_type, rule_ref, ip_hash, len(members))
                allowed = decision.allowed
            except Exception as exc:
                log_event(
                    "error",
                    "burst_guard.fail_open",
                    event_type=event_type,
                    ip_hash=ip_hash,
                    error_code="burst_guard_internal",
                    extra={"error": repr(exc)},
                )
                allowed = len(members)

            if allowed < len(members):
                blocked += len(members) - allowed
                log_event(
                    "warning",
                    "events.burst_blocked",
                    event_type=event_type,
                    rule_id=rule_ref,
                    ip_hash=ip_hash,
                    extra={
                        "requested": len(members),
                        "allowed": allowed,
                        "blocked": len(members) - allowed,
                        "limit": self.burst.max_per_window,
                    },
                )
            admitted.extend(members[:allowed])

        # keep the submitted order for the dedupe pass
        order = {id(event): index for index, event in enumerate(enriched)}
        admitted.sort(key=lambda event: order[id(event)])
        return admitted, blocked

    def _suppress_view(self, event: EnrichedEvent) -> bool:
        if event.type != EventType.VIEW or not event.rule_id:
            return False
        try:
            return self.dedupe.should_suppress(event.ip_hash, event.rule_id)
        except Exception as exc:
            log_event(
                "error",
                "view_dedupe.fail_open",
                rule_id=event.rule_id,
                ip_hash=event.ip_hash,
                error_code="dedupe_internal",
                extra={"error": repr(exc)},
            )
            return False

    async def _score(self, sample: EnrichedEvent) -> int:
        identity_key = f"{sample.ip_hash}:{sample.ua_hash}"
        try:
            result = await self.scorer.score(identity_key, sample)
        except Exception as exc:
            logger.warning("anomaly.score_failed", extra={"error": repr(exc), "ip_hash": short_hash(sample.ip_hash)})
            return 0
        if result.overall <= self.settings.ANOMALY_WARNING_THRESHOLD:
            return 0
        log_event(
            "warning",
            "events.anomaly_detected",
            event_type=sample.type.value,
            rule_id=sample.rule_id,
            ip_hash=sample.ip_hash,
            extra={"overall": round(result.overall, 3), "components": result.components},
        )
        return 1

    async def record_events(self, events: Sequence[IncomingEvent], headers: Mapping[str, str]) -> IngestResult:
        ip_hash, ua_hash = request_hashes(headers, self.settings)
        now = datetime.fromtimestamp(self.time_fn() / 1000, timezone.utc)

        enriched = [EnrichedEvent.from_incoming(e, ip_hash=ip_hash, ua_hash=ua_hash, now=now) for e in events]

        admitted, blocked = self._apply_burst_guard(enriched)

        survivors: List[EnrichedEvent] = []
        deduped = 0
        for event in admitted:
            if self._suppress_view(event):
                deduped += 1
                logger.debug("events.view_deduped", extra={"rule_id": event.rule_id, "ip_hash": short_hash(ip_hash)})
                continue
            survivors.append(event)

        # scored on one representative event per batch
        anomalies = await self._score(survivors[0]) if survivors else 0

        if not survivors:
            result = IngestResult(accepted=0, deduped=deduped, blocked=blocked, anomalies=anomalies)
            self._count(result)
            return result

        try:
            accepted = await self.store.insert_events([event.to_persisted() for event in survivors])
        except Exception as exc:
            log_event(
                "error",
                "events.persist_failed",
                ip_hash=ip_hash,
                error_code="storage_error",
                extra={"event_count": len(survivors), "error": repr(exc)},
            )
            raise

        result = IngestResult(accepted=accepted, deduped=deduped, blocked=blocked, anomalies=anomalies)
        self._count(result)
        logger.info(
            "events.recorded",
            extra={
                "requested": len(events),
                "accepted": result.accepted,
                "deduped": result.deduped,
                "blocked": result.blocked,
                "types": sorted({event.type.value for event in survivors}),
            },
        )
        return result

    @staticmethod
    def _count(result: IngestResult) -> None:
        for outcome in ("accepted", "deduped", "blocked"):
            amount = getattr(result, outcome)
            if amount:
                ingest_events_total.inc(labels={"outcome": outcome}, amount=amount)
        if result.anomalies:
            ingest_anomalies_total.inc(amount=result.anomalies)

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {"view_dedupe": self.dedupe.stats(), "burst": self.burst.stats()}
