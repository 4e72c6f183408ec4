"""
Rollup / aggregation engine.

perform_rollup(target_date, dry_run, days_back):
- window [target - days_back, target + 1 day)
- one transaction: per-rule metrics (+ denormalized rules.score),
  per-author metrics, GLOBAL leaderboard snapshots for DAILY/WEEKLY/MONTHLY
  and, on the configured weekday, ALL
- after commit, best effort: TAG/MODEL weekly snapshots, badge awarding
- dry run: activity discovery only, no writes

The blocking unit of work runs in a threadpool so the event loop stays free.
"""

import calendar
import logging
import time
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from ingest.core.config import Settings, settings
from ingest.core.errors import RollupError
from ingest.core.metrics import rollup_runs_total
from ingest.features.rollup.gamification import award_badges
from ingest.features.rollup.models import (
    AuthorMetricDaily,
    BadgeCounts,
    LeaderboardEntry,
    LeaderboardPeriod,
    LeaderboardScope,
    LeaderboardSnapshot,
    RollupResult,
    RuleMetricDaily,
    RuleMetricTotals,
)
from ingest.features.rollup.repository import RollupRepository, RollupUnit
from ingest.features.rollup.scoring import TREND_WEIGHTS, aggregate_rule_events, author_score, trending_score

logger = logging.getLogger("ingest.rollup")

ALL_TIME_FLOOR = date(2020, 1, 1)

PostRollupTask = Callable[[RollupUnit, date], BadgeCounts]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def minus_one_month(day: date) -> date:
    year, month = (day.year - 1, 12) if day.month == 1 else (day.year, day.month - 1)
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def period_start(period: LeaderboardPeriod, target_date: date) -> date:
    if period == LeaderboardPeriod.DAILY:
        return target_date
    if period == LeaderboardPeriod.WEEKLY:
        return target_date - timedelta(days=7)
    if period == LeaderboardPeriod.MONTHLY:
        return minus_one_month(target_date)
    return ALL_TIME_FLOOR


def window_bounds(target_date: date, days_back: int) -> tuple:
    target_start = datetime(target_date.year, target_date.month, target_date.day, tzinfo=timezone.utc)
    return target_start - timedelta(days=days_back), target_start + timedelta(days=1)


def sum_rule_metrics(rows: Sequence[RuleMetricDaily]) -> List[RuleMetricTotals]:
    totals: Dict[str, RuleMetricTotals] = {}
    for row in rows:
        acc = totals.setdefault(row.rule_id, RuleMetricTotals(rule_id=row.rule_id))
        acc.score += row.score
        acc.views += row.views
        acc.copies += row.copies
    return sorted(totals.values(), key=lambda t: (-t.score, -t.copies, -t.views, t.rule_id))


class RollupEngine:
    def __init__(
        self,
        repository: RollupRepository,
        *,
        settings_obj: Optional[Settings] = None,
        post_rollup: Optional[PostRollupTask] = award_badges,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.repository = repository
        self.settings = settings_obj or settings
        self.post_rollup = post_rollup
        self.clock = clock

    # -- rules ---------------------------------------------------------------

    def update_rule_metrics(self, unit: RollupUnit, target_date: date, days_back: int) -> int:
        start, end = window_bounds(target_date, days_back)
        updated = 0
        for rule_id in unit.active_rule_ids(start, end):
            aggregate = aggregate_rule_events(
                rule_id,
                unit.find_rule_events(rule_id, start, end),
                target_date=target_date,
                days_back=days_back,
                view_cap=self.settings.MAX_VIEWS_PER_IP_PER_RULE_PER_DAY,
                per_ip_minute_cap=self.settings.MAX_EVENTS_PER_IP_PER_MINUTE,
            )
            if aggregate.skipped_rate_limited:
                logger.warning(
                    "rollup.per_minute_cap_applied",
                    extra={"rule_id": rule_id, "skipped": aggregate.skipped_rate_limited},
                )
            score = trending_score(
                aggregate.daily,
                lam=self.settings.TRENDING_DECAY_LAMBDA,
                weights=TREND_WEIGHTS,
                max_days=days_back,
            )
            today = aggregate.daily[0]
            unit.upsert_rule_metric(
                RuleMetricDaily(
                    date=target_date,
                    rule_id=rule_id,
                    views=today.views,
                    copies=today.copies,
                    saves=today.saves,
                    forks=today.forks,
                    votes=today.votes,
                    score=score,
                )
            )
            unit.set_rule_score(rule_id, score)
            updated += 1
        return updated

    # -- authors -------------------------------------------------------------

    def update_author_metrics(self, unit: RollupUnit, target_date: date, days_back: int) -> int:
        start, end = window_bounds(target_date, days_back)
        updated = 0
        for author_id in unit.active_author_ids(start, end):
            by_type = Counter(event.type.value for event in unit.find_author_events(author_id, start, end))
            donations = unit.find_donations(author_id, start, end)
            unit.upsert_author_metric(
                AuthorMetricDaily(
                    date=target_date,
                    author_user_id=author_id,
                    views=by_type.get("VIEW", 0),
                    copies=by_type.get("COPY", 0),
                    saves=by_type.get("SAVE", 0),
                    forks=by_type.get("FORK", 0),
                    votes=by_type.get("VOTE", 0),
                    score=author_score(by_type),
                    donations=len(donations),
                    donations_cents=sum(d.amount_cents for d in donations),
                )
            )
            updated += 1
        return updated

    # -- leaderboards --------------------------------------------------------

    def build_leaderboard(
        self,
        unit: RollupUnit,
        period: LeaderboardPeriod,
        target_date: date,
        *,
        scope: LeaderboardScope = LeaderboardScope.GLOBAL,
        scope_ref: str = "",
        limit: Optional[int] = None,
    ) -> LeaderboardSnapshot:
        if limit is None:
            limit = (
                self.settings.LEADERBOARD_GLOBAL_LIMIT
                if scope == LeaderboardScope.GLOBAL
                else self.settings.LEADERBOARD_SCOPED_LIMIT
            )
        rule_ids = None if scope == LeaderboardScope.GLOBAL else unit.scoped_rule_ids(scope, scope_ref)
        totals = sum_rule_metrics(unit.find_rule_metrics(period_start(period, target_date), target_date, rule_ids))[:limit]
        rules = unit.find_rules([t.rule_id for t in totals])

        entries: List[LeaderboardEntry] = []
        for total in totals:
            rule = rules.get(total.rule_id)
            if rule is None:
                continue
            entries.append(
                LeaderboardEntry(
                    rank=len(entries) + 1,
                    rule_id=rule.id,
                    slug=rule.slug,
                    title=rule.title,
                    author=rule.author,
                    score=round(total.score, 2),
                    views=total.views,
                    copies=total.copies,
                )
            )
        return LeaderboardSnapshot(period=period, scope=scope, scope_ref=scope_ref, date=target_date, entries=entries)

    def update_leaderboard_snapshot(self, unit: RollupUnit, period: LeaderboardPeriod, target_date: date, **kwargs) -> int:
        unit.upsert_snapshot(self.build_leaderboard(unit, period, target_date, **kwargs))
        return 1

    def update_scoped_snapshots(self, unit: RollupUnit, target_date: date) -> int:
        written = 0
        for scope in (LeaderboardScope.TAG, LeaderboardScope.MODEL):
            refs = unit.popular_scope_refs(
                scope,
                limit=self.settings.LEADERBOARD_SCOPED_MAX_REFS,
                min_rules=self.settings.LEADERBOARD_SCOPED_MIN_RULES,
            )
            for ref in refs:
                snapshot = self.build_leaderboard(unit, LeaderboardPeriod.WEEKLY, target_date, scope=scope, scope_ref=ref)
                if snapshot.entries:
                    unit.upsert_snapshot(snapshot)
                    written += 1
        return written

    # -- orchestration -------------------------------------------------------

    def _run(self, target_date: date, days_back: int, result: RollupResult) -> None:
        with self.repository.transaction() as unit:
            result.rules_updated = self.update_rule_metrics(unit, target_date, days_back)
            result.authors_updated = self.update_author_metrics(unit, target_date, days_back)
            result.snapshots.daily = self.update_leaderboard_snapshot(unit, LeaderboardPeriod.DAILY, target_date)
            result.snapshots.weekly = self.update_leaderboard_snapshot(unit, LeaderboardPeriod.WEEKLY, target_date)
            result.snapshots.monthly = self.update_leaderboard_snapshot(unit, LeaderboardPeriod.MONTHLY, target_date)
            if target_date.weekday() == self.settings.ROLLUP_ALL_WEEKDAY:
                result.snapshots.all = self.update_leaderboard_snapshot(unit, LeaderboardPeriod.ALL, target_date)

    def _run_best_effort(self, target_date: date, result: RollupResult) -> None:
        try:
            with self.repository.transaction() as unit:
                result.snapshots.scoped = self.update_scoped_snapshots(unit, target_date)
        except Exception:
            logger.error("rollup.scoped_snapshots_failed", exc_info=True, extra={"date": target_date.isoformat()})

        if self.post_rollup is None:
            return
        try:
            with self.repository.transaction() as unit:
                result.badges_awarded = self.post_rollup(unit, target_date)
        except Exception:
            logger.error("rollup.post_rollup_failed", exc_info=True, extra={"date": target_date.isoformat()})

    def _count_activity(self, target_date: date, days_back: int, result: RollupResult) -> None:
        start, end = window_bounds(target_date, days_back)
        with self.repository.transaction() as unit:
            result.rules_updated = len(unit.active_rule_ids(start, end))
            result.authors_updated = len(unit.active_author_ids(start, end))
        result.snapshots.daily = 1
        result.snapshots.weekly = 1
        result.snapshots.monthly = 1

    def perform_rollup_sync(
        self,
        target_date: Optional[date] = None,
        dry_run: bool = False,
        days_back: Optional[int] = None,
    ) -> RollupResult:
        started = self.clock()
        target_date = target_date or utc_today()
        if isinstance(target_date, datetime):
            target_date = target_date.astimezone(timezone.utc).date() if target_date.tzinfo else target_date.date()
        if days_back is None or days_back < 1:
            days_back = self.settings.ROLLUP_DAYS_BACK

        logger.info(
            "rollup.start",
            extra={"date": target_date.isoformat(), "days_back": days_back, "dry_run": dry_run},
        )
        result = RollupResult(dry_run=dry_run)

        if dry_run:
            self._count_activity(target_date, days_back, result)
        else:
            try:
                self._run(target_date, days_back, result)
            except Exception as exc:
                rollup_runs_total.inc(labels={"outcome": "failed"})
                logger.error("rollup.failed", exc_info=True, extra={"date": target_date.isoformat()})
                raise RollupError(f"Rollup for {target_date.isoformat()} failed: {exc}") from exc
            self._run_best_effort(target_date, result)

        result.took_ms = int((self.clock() - started) * 1000)
        rollup_runs_total.inc(labels={"outcome": "dry_run" if dry_run else "succeeded"})
        logger.info("rollup.complete", extra={"date": target_date.isoformat(), **result.to_response()})
        return result

    async def perform_rollup(
        self,
        target_date: Optional[date] = None,
        dry_run: bool = False,
        days_back: Optional[int] = None,
    ) -> RollupResult:
        return await run_in_threadpool(self.perform_rollup_sync, target_date, dry_run, days_back)
