from datetime import datetime, timezone

import pytest

from ingest.conftest import FakeClock
from ingest.features.events.anomaly import (
    DAY_MS,
    AnomalyScore,
    HeuristicAnomalyScorer,
    NullAnomalyScorer,
    shannon_entropy,
)
from ingest.features.events.models import EnrichedEvent, EventType

UA_HASH = "9f2c" * 16


def make_event(event_type=EventType.COPY, rule_id="rule-1", ip_hash="ip-a", ua_hash=UA_HASH):
    return EnrichedEvent(
        type=event_type,
        rule_id=rule_id,
        ip_hash=ip_hash,
        ua_hash=ua_hash,
        created_at=datetime(2026, 3, 4, 12, tzinfo=timezone.utc),
    )


def test_shannon_entropy():
    assert shannon_entropy("") == 0.0
    assert shannon_entropy("aaaa") == 0.0
    assert shannon_entropy("ab") == pytest.approx(1.0)
    assert shannon_entropy("0123456789abcdef") == pytest.approx(4.0)


def test_score_bounds_are_enforced():
    with pytest.raises(ValueError):
        AnomalyScore(overall=1.5)


@pytest.mark.asyncio
async def test_null_scorer_is_always_zero():
    score = await NullAnomalyScorer().score("id", make_event())
    assert score.overall == 0.0


@pytest.mark.asyncio
async def test_single_event_scores_low():
    scorer = HeuristicAnomalyScorer(time_fn=FakeClock())
    score = await scorer.score("ip-a:ua", make_event())
    assert score.overall < 0.5
    assert score.components["burst"] == 0.0
    assert score.components["duplication"] == 0.0


@pytest.mark.asyncio
async def test_repeated_burst_scores_high():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(baseline_per_min=5, time_fn=clock)
    score = None
    for _ in range(20):
        score = await scorer.score("ip-a:ua", make_event())
        clock.advance(500)
    assert score.components["burst"] == 1.0
    assert score.components["duplication"] == pytest.approx(19 / 20)
    assert score.overall > 0.5
    assert score.metadata["events_per_min"] == 20.0


@pytest.mark.asyncio
async def test_old_events_leave_the_minute_window():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(time_fn=clock)
    for _ in range(10):
        await scorer.score("ip-a:ua", make_event())
    clock.advance(61_000)
    score = await scorer.score("ip-a:ua", make_event())
    assert score.metadata["events_per_min"] == 1.0
    assert score.components["burst"] == 0.0


@pytest.mark.asyncio
async def test_history_is_bounded_and_swept():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(max_history=3, time_fn=clock)
    for _ in range(5):
        await scorer.score("ip-a:ua", make_event())
    await scorer.score("ip-b:ua", make_event(ip_hash="ip-b"))
    assert scorer.stats() == {"identities": 2, "events": 4, "recorded": 0}

    clock.advance(DAY_MS)
    assert scorer.sweep() == 2
    assert scorer.stats()["identities"] == 0


@pytest.mark.asyncio
async def test_identities_are_scored_independently():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(time_fn=clock)
    for _ in range(20):
        await scorer.score("noisy", make_event())
    quiet = await scorer.score("quiet", make_event(ip_hash="ip-z"))
    assert quiet.components["burst"] == 0.0
    scorer.clear()
    assert scorer.stats()["identities"] == 0


@pytest.mark.asyncio
async def test_accelerating_events_raise_velocity():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(time_fn=clock)
    score = await scorer.score("ip-a:ua", make_event())
    for gap in (1000, 500, 250, 125):
        clock.advance(gap)
        score = await scorer.score("ip-a:ua", make_event())
    # three shrinking gaps of 50% over four gaps
    assert score.components["velocity"] == pytest.approx(0.375)


@pytest.mark.asyncio
async def test_steady_events_have_no_velocity():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(time_fn=clock)
    score = None
    for _ in range(5):
        score = await scorer.score("ip-a:ua", make_event())
        clock.advance(1000)
    assert score.components["velocity"] == 0.0


@pytest.mark.asyncio
async def test_high_scores_are_recorded_newest_first():
    clock = FakeClock()
    scorer = HeuristicAnomalyScorer(time_fn=clock)
    score = None
    for _ in range(20):
        score = await scorer.score("ip-a:ua", make_event())
        clock.advance(500)

    recent = scorer.recent_anomalies(limit=1)
    assert len(recent) == 1
    assert recent[0]["overall"] == round(score.overall, 3)
    assert recent[0]["identity"] == "ip-a:ua"
    assert recent[0]["ruleId"] == "rule-1"
    assert scorer.recent_anomalies(threshold=0.99) == []
    assert scorer.stats()["recorded"] >= 1

    scorer.clear()
    assert scorer.recent_anomalies() == []
