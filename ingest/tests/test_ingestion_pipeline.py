from datetime import datetime, timedelta, timezone

import pytest

from ingest.conftest import FakeClock, WEDNESDAY_NOON, make_settings
from ingest.core.memory import MemoryDatabase
from ingest.core.metrics import ingest_anomalies_total, ingest_events_total
from ingest.core.privacy import request_hashes
from ingest.features.events.anomaly import AnomalyScore
from ingest.features.events.guards import BurstGuard, ViewDedupeCache
from ingest.features.events.models import EventFilter, EventType, IncomingEvent
from ingest.features.events.service import IngestionPipeline
from ingest.features.events.store import InMemoryEventStore

HEADERS = {"x-forwarded-for": "203.0.113.7", "user-agent": "curl/8.0"}


def build_pipeline(clock=None, store=None, scorer=None, **overrides):
    clock = clock or FakeClock()
    cfg = make_settings(**overrides)
    store = store or InMemoryEventStore(MemoryDatabase())
    pipeline = IngestionPipeline(
        store,
        dedupe=ViewDedupeCache(cfg.VIEW_DEDUPE_WINDOW_MS, time_fn=clock),
        burst=BurstGuard(cfg.MAX_IDENTICAL_EVENTS_PER_MINUTE, window_ms=cfg.BURST_WINDOW_MS, time_fn=clock),
        scorer=scorer,
        settings_obj=cfg,
        time_fn=clock,
    )
    return pipeline, store


def events_of(event_type, n, rule_id="rule-1", **fields):
    return [IncomingEvent(type=event_type, rule_id=rule_id, **fields) for _ in range(n)]


class StaticScorer:
    def __init__(self, overall):
        self.overall = overall
        self.calls = 0

    async def score(self, identity_key, event):
        self.calls += 1
        return AnomalyScore(overall=self.overall)


class ExplodingScorer:
    async def score(self, identity_key, event):
        raise RuntimeError("scorer down")


class ExplodingStore(InMemoryEventStore):
    def __init__(self):
        super().__init__(MemoryDatabase())
        self.insert_calls = 0

    async def insert_events(self, rows):
        self.insert_calls += 1
        raise RuntimeError("db down")


@pytest.mark.asyncio
async def test_repeated_views_are_deduped_within_batch():
    pipeline, store = build_pipeline()
    result = await pipeline.record_events(events_of(EventType.VIEW, 3), HEADERS)
    assert (result.accepted, result.deduped, result.blocked) == (1, 2, 0)
    assert store.count() == 1


@pytest.mark.asyncio
async def test_burst_guard_blocks_past_threshold():
    pipeline, store = build_pipeline(MAX_IDENTICAL_EVENTS_PER_MINUTE=30)
    result = await pipeline.record_events(events_of(EventType.COPY, 50), HEADERS)
    assert result.accepted == 30
    assert result.blocked == 20
    assert result.deduped == 0
    assert store.count() == 30


@pytest.mark.asyncio
async def test_counts_always_add_up():
    pipeline, _ = build_pipeline(MAX_IDENTICAL_EVENTS_PER_MINUTE=3)
    batch = events_of(EventType.VIEW, 5) + events_of(EventType.COPY, 4) + events_of(EventType.SAVE, 1, rule_id="rule-2")
    result = await pipeline.record_events(batch, HEADERS)
    assert result.accepted + result.deduped + result.blocked == len(batch)
    # VIEW: 3 admitted, 1 counted; COPY: 3 admitted; SAVE: 1
    assert (result.accepted, result.deduped, result.blocked) == (5, 2, 3)


@pytest.mark.asyncio
async def test_views_dedupe_across_batches_until_window_expires():
    clock = FakeClock()
    pipeline, _ = build_pipeline(clock)
    first = await pipeline.record_events(events_of(EventType.VIEW, 1), HEADERS)
    clock.advance_seconds(60)
    second = await pipeline.record_events(events_of(EventType.VIEW, 1), HEADERS)
    clock.advance(10 * 60 * 1000)
    third = await pipeline.record_events(events_of(EventType.VIEW, 1), HEADERS)
    assert [first.accepted, second.accepted, third.accepted] == [1, 0, 1]
    assert second.deduped == 1


@pytest.mark.asyncio
async def test_views_from_another_ip_are_counted():
    pipeline, _ = build_pipeline()
    await pipeline.record_events(events_of(EventType.VIEW, 1), HEADERS)
    other = await pipeline.record_events(events_of(EventType.VIEW, 1), {**HEADERS, "x-forwarded-for": "198.51.100.9"})
    assert other.accepted == 1


@pytest.mark.asyncio
async def test_events_are_enriched_with_hashes_and_timestamps():
    clock = FakeClock()
    pipeline, store = build_pipeline(clock)
    explicit = WEDNESDAY_NOON - timedelta(hours=3)
    await pipeline.record_events(
        [
            IncomingEvent(type=EventType.COPY, rule_id="rule-1", ts=explicit),
            IncomingEvent(type=EventType.SAVE, rule_id="rule-1", userId="user-9"),
        ],
        HEADERS,
    )
    stored = await store.find_events(EventFilter())
    ip_hash, ua_hash = request_hashes(HEADERS, pipeline.settings)
    assert {e.ip_hash for e in stored} == {ip_hash}
    assert {e.ua_hash for e in stored} == {ua_hash}
    by_type = {e.type: e for e in stored}
    assert by_type[EventType.COPY].created_at == explicit
    assert by_type[EventType.SAVE].created_at == datetime.fromtimestamp(clock() / 1000, timezone.utc)
    assert by_type[EventType.SAVE].user_id == "user-9"


@pytest.mark.asyncio
async def test_storage_skips_duplicate_idempotency_keys():
    pipeline, store = build_pipeline()
    batch = [
        IncomingEvent(type=EventType.COPY, rule_id="rule-1", idempotencyKey="k-1"),
        IncomingEvent(type=EventType.COPY, rule_id="rule-1", idempotencyKey="k-1"),
    ]
    result = await pipeline.record_events(batch, HEADERS)
    assert result.accepted == 1
    assert store.count() == 1


@pytest.mark.asyncio
async def test_all_filtered_batch_never_touches_storage():
    store = ExplodingStore()
    pipeline, _ = build_pipeline(store=store)
    pipeline.dedupe.should_suppress(request_hashes(HEADERS, pipeline.settings)[0], "rule-1")
    result = await pipeline.record_events(events_of(EventType.VIEW, 2), HEADERS)
    assert (result.accepted, result.deduped) == (0, 2)
    assert store.insert_calls == 0


@pytest.mark.asyncio
async def test_storage_failure_propagates():
    store = ExplodingStore()
    pipeline, _ = build_pipeline(store=store)
    with pytest.raises(RuntimeError, match="db down"):
        await pipeline.record_events(events_of(EventType.COPY, 1), HEADERS)
    assert ingest_events_total.value(labels={"outcome": "accepted"}) == 0


@pytest.mark.asyncio
async def test_anomaly_above_threshold_is_flagged_not_blocked():
    scorer = StaticScorer(0.9)
    pipeline, store = build_pipeline(scorer=scorer)
    result = await pipeline.record_events(events_of(EventType.COPY, 5), HEADERS)
    assert result.anomalies == 1
    assert result.accepted == 5
    assert scorer.calls == 1
    assert ingest_anomalies_total.value() == 1


@pytest.mark.asyncio
async def test_anomaly_at_threshold_is_not_flagged():
    pipeline, _ = build_pipeline(scorer=StaticScorer(0.5))
    result = await pipeline.record_events(events_of(EventType.COPY, 1), HEADERS)
    assert result.anomalies == 0


@pytest.mark.asyncio
async def test_scorer_failure_is_ignored():
    pipeline, store = build_pipeline(scorer=ExplodingScorer())
    result = await pipeline.record_events(events_of(EventType.COPY, 2), HEADERS)
    assert result.accepted == 2
    assert result.anomalies == 0


@pytest.mark.asyncio
async def test_guard_failures_fail_open():
    class BrokenBurst(BurstGuard):
        def admit(self, *args, **kwargs):
            raise RuntimeError("burst state corrupted")

    class BrokenDedupe(ViewDedupeCache):
        def should_suppress(self, ip_hash, rule_id):
            raise RuntimeError("dedupe state corrupted")

    pipeline, store = build_pipeline()
    pipeline.burst = BrokenBurst(1)
    pipeline.dedupe = BrokenDedupe(1000)
    result = await pipeline.record_events(events_of(EventType.VIEW, 3), HEADERS)
    assert result.accepted == 3
    assert result.blocked == 0
    assert result.deduped == 0


@pytest.mark.asyncio
async def test_outcome_metrics_are_counted():
    pipeline, _ = build_pipeline(MAX_IDENTICAL_EVENTS_PER_MINUTE=2)
    await pipeline.record_events(events_of(EventType.VIEW, 3), HEADERS)
    assert ingest_events_total.value(labels={"outcome": "accepted"}) == 1
    assert ingest_events_total.value(labels={"outcome": "deduped"}) == 1
    assert ingest_events_total.value(labels={"outcome": "blocked"}) == 1


def test_stats_exposes_guard_state():
    pipeline, _ = build_pipeline()
    stats = pipeline.stats()
    assert set(stats) == {"view_dedupe", "burst"}


@pytest.mark.asyncio
async def test_five_over_the_cap_are_blocked():
    pipeline, _ = build_pipeline()
    cap = pipeline.settings.MAX_IDENTICAL_EVENTS_PER_MINUTE
    result = await pipeline.record_events(events_of(EventType.SAVE, cap + 5), HEADERS)
    assert result.accepted == cap
    assert result.blocked == 5
