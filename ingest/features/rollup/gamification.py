"""
Post-rollup badge awarding.

Runs after the metrics transaction has committed. Failures are the caller's
to log; nothing here can roll back rollup metrics.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Dict, List

from ingest.features.events.models import EventType
from ingest.features.rollup.models import BadgeCounts, LeaderboardPeriod, LeaderboardScope
from ingest.features.rollup.repository import RollupUnit, day_bounds

logger = logging.getLogger("ingest.rollup.gamification")

TOP10_WEEK = "top-10-week"
HUNDRED_COPIES = "hundred-copies"
TEN_UPVOTES = "ten-upvotes"

BADGE_CATALOG: Dict[str, Dict[str, str]] = {
    TOP10_WEEK: {"name": "Top 10 This Week", "description": "Rule placed in the weekly top 10"},
    HUNDRED_COPIES: {"name": "Hundred Copies", "description": "Rule was copied 100 times"},
    TEN_UPVOTES: {"name": "Ten Upvotes", "description": "Rule received 10 upvotes"},
}

COPIES_THRESHOLD = 100
UPVOTES_THRESHOLD = 10


def _award_to_author(unit: RollupUnit, rule_id: str, badge_slug: str, awarded_at: datetime) -> bool:
    rule = unit.find_rules([rule_id]).get(rule_id)
    if rule is None or rule.author is None:
        return False
    return unit.award_badge(rule.author.id, badge_slug, rule_id, awarded_at)


def award_badges(unit: RollupUnit, target_date: date) -> BadgeCounts:
    counts = BadgeCounts()
    awarded_at = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
    unit.ensure_badges(BADGE_CATALOG)

    weekly = unit.get_snapshot(LeaderboardPeriod.WEEKLY, LeaderboardScope.GLOBAL, "", target_date)
    top_rule_ids: List[str] = [entry.rule_id for entry in (weekly.entries[:10] if weekly else [])]
    for rule_id in top_rule_ids:
        if _award_to_author(unit, rule_id, TOP10_WEEK, awarded_at):
            counts.top10_week += 1

    for rule_id in unit.rule_ids_with_metrics_on(target_date):
        if unit.count_rule_events(rule_id, EventType.COPY) < COPIES_THRESHOLD:
            continue
        if _award_to_author(unit, rule_id, HUNDRED_COPIES, awarded_at):
            counts.hundred_copies += 1

    start, end = day_bounds(target_date)
    for rule_id in unit.rule_ids_with_votes_between(start, end):
        if unit.count_upvotes(rule_id) < UPVOTES_THRESHOLD:
            continue
        if _award_to_author(unit, rule_id, TEN_UPVOTES, awarded_at):
            counts.ten_upvotes += 1

    logger.info(
        "rollup.badges_awarded",
        extra={
            "hundred_copies": counts.hundred_copies,
            "top10_week": counts.top10_week,
            "ten_upvotes": counts.ten_upvotes,
        },
    )
    return counts
