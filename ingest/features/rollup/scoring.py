"""
Trending math and the per-rule event reducer.

Pure functions: no I/O, no clock. Everything tunable is a parameter so the
engine can feed values from settings.

Trending score:
    score = sum_i exp(-lambda * i) * (0.4*views + 0.3*copies + 0.2*saves + 0.1*votes)
over the most-recent-first daily array, rounded to 2 decimals.
"""

import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping, Optional

from ingest.features.events.models import EventType, PersistedEvent
from ingest.features.rollup.models import DailyCounts, RuleAggregate

DEFAULT_DECAY_LAMBDA = 0.25
DEFAULT_MAX_DAYS = 7

TREND_WEIGHTS: Mapping[str, float] = {
    "views": 0.4,
    "copies": 0.3,
    "saves": 0.2,
    "votes": 0.1,
}

_COUNTED = {
    EventType.COPY: "copies",
    EventType.SAVE: "saves",
    EventType.FORK: "forks",
    EventType.VOTE: "votes",
}


def decay_weight(days_ago: int, lam: float = DEFAULT_DECAY_LAMBDA) -> float:
    return math.exp(-lam * days_ago)


def trending_score(
    daily: List[DailyCounts],
    lam: float = DEFAULT_DECAY_LAMBDA,
    weights: Optional[Mapping[str, float]] = None,
    max_days: int = DEFAULT_MAX_DAYS,
) -> float:
    weights = weights or TREND_WEIGHTS
    score = 0.0
    for days_ago, counts in enumerate(daily[:max_days]):
        if counts is None:
            continue
        activity = sum(weight * getattr(counts, metric) for metric, weight in weights.items())
        score += decay_weight(days_ago, lam) * activity
    return round(score, 2)


def cap_view_count(view_count: int, cap: int) -> int:
    return min(view_count, cap)


def author_score(counts: Mapping[str, int]) -> float:
    """Authors get a flat, undecayed blend: views + 2 * copies."""
    return float(counts.get(EventType.VIEW.value, 0) + 2 * counts.get(EventType.COPY.value, 0))


def aggregate_rule_events(
    rule_id: str,
    events: Iterable[PersistedEvent],
    *,
    target_date: date,
    days_back: int,
    view_cap: int,
    per_ip_minute_cap: int,
) -> RuleAggregate:
    """Reduce one rule's raw events into a most-recent-first daily array.

    - events from one IP beyond ``per_ip_minute_cap`` within a single minute
      are dropped before counting
    - views are counted per IP per day and capped at ``view_cap``
    - days with no activity are zero-filled; days outside
      [target_date - days_back + 1, target_date] are ignored
    """
    ip_minute_counts: Dict[tuple, int] = defaultdict(int)
    views_by_day_ip: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    counts_by_day: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    skipped = 0

    for event in sorted(events, key=lambda e: e.created_at):
        minute_key = (event.ip_hash, event.created_at.replace(second=0, microsecond=0))
        if ip_minute_counts[minute_key] >= per_ip_minute_cap:
            skipped += 1
            continue
        ip_minute_counts[minute_key] += 1

        day = event.created_at.date()
        if event.type == EventType.VIEW:
            views_by_day_ip[day][event.ip_hash] += 1
        elif event.type in _COUNTED:
            counts_by_day[day][_COUNTED[event.type]] += 1

    daily: List[DailyCounts] = []
    views_capped = 0
    for days_ago in range(days_back):
        day = target_date - timedelta(days=days_ago)
        per_ip = views_by_day_ip.get(day, {})
        raw_views = sum(per_ip.values())
        views = sum(cap_view_count(n, view_cap) for n in per_ip.values())
        views_capped += raw_views - views
        counts = counts_by_day.get(day, {})
        daily.append(
            DailyCounts(
                views=views,
                copies=counts.get("copies", 0),
                saves=counts.get("saves", 0),
                forks=counts.get("forks", 0),
                votes=counts.get("votes", 0),
            )
        )

    return RuleAggregate(rule_id=rule_id, daily=daily, skipped_rate_limited=skipped, views_capped=views_capped)
