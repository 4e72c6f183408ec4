"""
Rollup persistence.

RollupRepository.transaction() yields a RollupUnit: every read and upsert
the rollup needs, scoped to one all-or-nothing unit of work. Leaving the
context normally commits; an exception discards every write made through
the unit and propagates.

- InMemoryRollupRepository: copy-on-write over MemoryDatabase. Only the
  tables the rollup owns are written back on commit, so events ingested
  while a rollup runs are never lost.
- SqlRollupRepository: one SQLAlchemy session/transaction per unit.
"""

from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy import and_, func, select, update

from ingest.core.database import (
    as_utc,
    author_metric_daily,
    badges,
    donations,
    events,
    get_db_session,
    insert_ignore,
    leaderboard_snapshots,
    rule_metric_daily,
    rule_tags,
    rules,
    upsert,
    user_badges,
    users,
    votes,
)
from ingest.core.memory import MemoryDatabase, MemoryTables
from ingest.features.events.models import EventFilter, EventType, PersistedEvent
from ingest.features.events.store import _from_row, build_events_query
from ingest.features.rollup.models import (
    AuthorMetricDaily,
    AuthorSummary,
    DonationRow,
    LeaderboardEntry,
    LeaderboardPeriod,
    LeaderboardScope,
    LeaderboardSnapshot,
    RuleInfo,
    RuleMetricDaily,
)

PUBLISHED = "PUBLISHED"
SUCCEEDED = "SUCCEEDED"


class RollupUnit(Protocol):
    def active_rule_ids(self, start: datetime, end: datetime) -> List[str]: ...

    def find_rule_events(self, rule_id: str, start: datetime, end: datetime) -> List[PersistedEvent]: ...

    def upsert_rule_metric(self, metric: RuleMetricDaily) -> None: ...

    def set_rule_score(self, rule_id: str, score: float) -> None: ...

    def active_author_ids(self, start: datetime, end: datetime) -> List[str]: ...

    def find_author_events(self, author_id: str, start: datetime, end: datetime) -> List[PersistedEvent]: ...

    def find_donations(self, to_user_id: str, start: datetime, end: datetime, status: str = SUCCEEDED) -> List[DonationRow]: ...

    def upsert_author_metric(self, metric: AuthorMetricDaily) -> None: ...

    def find_rule_metrics(self, start: date, end: date, rule_ids: Optional[Sequence[str]] = None) -> List[RuleMetricDaily]: ...

    def find_rules(self, rule_ids: Sequence[str]) -> Dict[str, RuleInfo]: ...

    def upsert_snapshot(self, snapshot: LeaderboardSnapshot) -> None: ...

    def get_snapshot(self, period: LeaderboardPeriod, scope: LeaderboardScope, scope_ref: str, day: date) -> Optional[LeaderboardSnapshot]: ...

    def popular_scope_refs(self, scope: LeaderboardScope, limit: int, min_rules: int) -> List[str]: ...

    def scoped_rule_ids(self, scope: LeaderboardScope, scope_ref: str) -> List[str]: ...

    def ensure_badges(self, catalog: Dict[str, Dict[str, str]]) -> None: ...

    def award_badge(self, user_id: str, badge_slug: str, rule_id: Optional[str], awarded_at: datetime) -> bool: ...

    def rule_ids_with_metrics_on(self, day: date) -> List[str]: ...

    def count_rule_events(self, rule_id: str, event_type: EventType) -> int: ...

    def rule_ids_with_votes_between(self, start: datetime, end: datetime) -> List[str]: ...

    def count_upvotes(self, rule_id: str) -> int: ...


class RollupRepository(Protocol):
    def transaction(self) -> Iterator[RollupUnit]: ...


def _snapshot_from_row(row) -> LeaderboardSnapshot:
    return LeaderboardSnapshot(
        period=row["period"],
        scope=row["scope"],
        scope_ref=row["scope_ref"],
        date=row["date"],
        entries=[LeaderboardEntry.model_validate(entry) for entry in (row["data"] or [])],
    )


def _rule_info(rule_row, user_row) -> RuleInfo:
    author = None
    if user_row is not None:
        author = AuthorSummary(
            id=user_row["user_id"],
            handle=user_row["handle"],
            display_name=user_row["display_name"],
            avatar_url=user_row["avatar_url"],
        )
    return RuleInfo(
        id=rule_row["id"],
        slug=rule_row["slug"],
        title=rule_row["title"],
        status=rule_row["status"],
        primary_model=rule_row["primary_model"],
        author=author,
    )


class InMemoryRollupUnit:
    def __init__(self, tables: MemoryTables):
        self.t = tables

    def _events(self, start: datetime, end: datetime, rule_ids=None) -> List[PersistedEvent]:
        event_filter = EventFilter(start=start, end=end)
        found = []
        for row in self.t.events:
            if rule_ids is not None and row["rule_id"] not in rule_ids:
                continue
            event = _from_row(row)
            if event_filter.matches(event):
                found.append(event)
        return sorted(found, key=lambda e: e.created_at)

    def active_rule_ids(self, start, end):
        return sorted({e.rule_id for e in self._events(start, end) if e.rule_id})

    def find_rule_events(self, rule_id, start, end):
        return self._events(start, end, rule_ids={rule_id})

    def upsert_rule_metric(self, metric):
        self.t.rule_metric_daily[(metric.date, metric.rule_id)] = metric.model_dump()

    def set_rule_score(self, rule_id, score):
        rule = self.t.rules.get(rule_id)
        if rule is not None:
            rule["score"] = score

    def _author_rule_ids(self, author_id: str) -> set:
        return {rid for rid, rule in self.t.rules.items() if rule["created_by_user_id"] == author_id}

    def active_author_ids(self, start, end):
        authors = set()
        for rule_id in self.active_rule_ids(start, end):
            rule = self.t.rules.get(rule_id)
            if rule and rule["created_by_user_id"]:
                authors.add(rule["created_by_user_id"])
        return sorted(authors)

    def find_author_events(self, author_id, start, end):
        return self._events(start, end, rule_ids=self._author_rule_ids(author_id))

    def find_donations(self, to_user_id, start, end, status=SUCCEEDED):
        found = []
        for row in self.t.donations:
            created = as_utc(row["created_at"])
            if row["to_user_id"] == to_user_id and row["status"] == status and start <= created < end:
                found.append(DonationRow(**{**row, "created_at": created}))
        return found

    def upsert_author_metric(self, metric):
        self.t.author_metric_daily[(metric.date, metric.author_user_id)] = metric.model_dump()

    def find_rule_metrics(self, start, end, rule_ids=None):
        wanted = set(rule_ids) if rule_ids is not None else None
        return [
            RuleMetricDaily(**row)
            for (day, rule_id), row in sorted(self.t.rule_metric_daily.items())
            if start <= day <= end and (wanted is None or rule_id in wanted)
        ]

    def find_rules(self, rule_ids):
        found = {}
        for rule_id in rule_ids:
            rule = self.t.rules.get(rule_id)
            if rule is None:
                continue
            found[rule_id] = _rule_info(rule, self.t.users.get(rule["created_by_user_id"]))
        return found

    def upsert_snapshot(self, snapshot):
        key = (snapshot.period.value, snapshot.scope.value, snapshot.scope_ref, snapshot.date)
        self.t.leaderboard_snapshots[key] = {
            "period": snapshot.period.value,
            "scope": snapshot.scope.value,
            "scope_ref": snapshot.scope_ref,
            "date": snapshot.date,
            "data": snapshot.data(),
        }

    def get_snapshot(self, period, scope, scope_ref, day):
        row = self.t.leaderboard_snapshots.get((period.value, scope.value, scope_ref, day))
        return _snapshot_from_row(row) if row else None

    def popular_scope_refs(self, scope, limit, min_rules):
        counts: Dict[str, int] = {}
        if scope == LeaderboardScope.TAG:
            for link in self.t.rule_tags:
                rule = self.t.rules.get(link["rule_id"])
                if rule and rule["status"] == PUBLISHED:
                    counts[link["tag_slug"]] = counts.get(link["tag_slug"], 0) + 1
        elif scope == LeaderboardScope.MODEL:
            for rule in self.t.rules.values():
                if rule["status"] == PUBLISHED and rule["primary_model"]:
                    counts[rule["primary_model"]] = counts.get(rule["primary_model"], 0) + 1
        ranked = sorted(((n, ref) for ref, n in counts.items() if n >= min_rules), key=lambda x: (-x[0], x[1]))
        return [ref for _, ref in ranked[:limit]]

    def scoped_rule_ids(self, scope, scope_ref):
        if scope == LeaderboardScope.TAG:
            return sorted({link["rule_id"] for link in self.t.rule_tags if link["tag_slug"] == scope_ref})
        if scope == LeaderboardScope.MODEL:
            return sorted(rid for rid, rule in self.t.rules.items() if rule["primary_model"] == scope_ref)
        return sorted(self.t.rules)

    def ensure_badges(self, catalog):
        for slug, info in catalog.items():
            self.t.badges.setdefault(slug, {"slug": slug, **info})

    def award_badge(self, user_id, badge_slug, rule_id, awarded_at):
        key = (user_id, badge_slug)
        if key in self.t.user_badges:
            return False
        self.t.user_badges[key] = {
            "user_id": user_id,
            "badge_slug": badge_slug,
            "rule_id": rule_id,
            "awarded_at": awarded_at,
        }
        return True

    def rule_ids_with_metrics_on(self, day):
        return sorted(rule_id for (d, rule_id) in self.t.rule_metric_daily if d == day)

    def count_rule_events(self, rule_id, event_type):
        return sum(1 for row in self.t.events if row["rule_id"] == rule_id and row["type"] == event_type.value)

    def rule_ids_with_votes_between(self, start, end):
        return sorted({v["rule_id"] for v in self.t.votes if start <= as_utc(v["created_at"]) < end})

    def count_upvotes(self, rule_id):
        return sum(1 for v in self.t.votes if v["rule_id"] == rule_id and v["value"] > 0)


_ROLLUP_OWNED_TABLES = ("rule_metric_daily", "author_metric_daily", "leaderboard_snapshots", "badges", "user_badges")


class InMemoryRollupRepository:
    def __init__(self, db: Optional[MemoryDatabase] = None):
        self.db = db or MemoryDatabase()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryRollupUnit]:
        with self.db.lock:
            working = self.db.tables.snapshot()
        yield InMemoryRollupUnit(working)
        with self.db.lock:
            for name in _ROLLUP_OWNED_TABLES:
                setattr(self.db.tables, name, getattr(working, name))
            for rule_id, rule in working.rules.items():
                live = self.db.tables.rules.get(rule_id)
                if live is not None:
                    live["score"] = rule["score"]


class SqlRollupUnit:
    def __init__(self, session):
        self.session = session

    def _rows(self, stmt):
        return [row._mapping for row in self.session.execute(stmt)]

    def active_rule_ids(self, start, end):
        stmt = (
            select(events.c.rule_id)
            .distinct()
            .where(events.c.rule_id.isnot(None), events.c.created_at >= start, events.c.created_at < end)
            .order_by(events.c.rule_id)
        )
        return [row[0] for row in self.session.execute(stmt)]

    def find_rule_events(self, rule_id, start, end):
        stmt = build_events_query(EventFilter(start=start, end=end, rule_id=rule_id))
        return [_from_row(row) for row in self._rows(stmt)]

    def upsert_rule_metric(self, metric):
        values = metric.model_dump(exclude={"date", "rule_id"})
        upsert(self.session, rule_metric_daily, {"date": metric.date, "rule_id": metric.rule_id}, values)

    def set_rule_score(self, rule_id, score):
        self.session.execute(update(rules).where(rules.c.id == rule_id).values(score=score))

    def active_author_ids(self, start, end):
        stmt = (
            select(rules.c.created_by_user_id)
            .distinct()
            .select_from(events.join(rules, events.c.rule_id == rules.c.id))
            .where(
                rules.c.created_by_user_id.isnot(None),
                events.c.created_at >= start,
                events.c.created_at < end,
            )
            .order_by(rules.c.created_by_user_id)
        )
        return [row[0] for row in self.session.execute(stmt)]

    def find_author_events(self, author_id, start, end):
        stmt = (
            select(events)
            .select_from(events.join(rules, events.c.rule_id == rules.c.id))
            .where(
                rules.c.created_by_user_id == author_id,
                events.c.created_at >= start,
                events.c.created_at < end,
            )
            .order_by(events.c.created_at, events.c.id)
        )
        return [_from_row(row) for row in self._rows(stmt)]

    def find_donations(self, to_user_id, start, end, status=SUCCEEDED):
        stmt = select(donations).where(
            donations.c.to_user_id == to_user_id,
            donations.c.status == status,
            donations.c.created_at >= start,
            donations.c.created_at < end,
        )
        return [DonationRow(**{**row, "created_at": as_utc(row["created_at"])}) for row in self._rows(stmt)]

    def upsert_author_metric(self, metric):
        values = metric.model_dump(exclude={"date", "author_user_id"})
        upsert(
            self.session,
            author_metric_daily,
            {"date": metric.date, "author_user_id": metric.author_user_id},
            values,
        )

    def find_rule_metrics(self, start, end, rule_ids=None):
        stmt = select(rule_metric_daily).where(rule_metric_daily.c.date >= start, rule_metric_daily.c.date <= end)
        if rule_ids is not None:
            stmt = stmt.where(rule_metric_daily.c.rule_id.in_(list(rule_ids)))
        stmt = stmt.order_by(rule_metric_daily.c.date, rule_metric_daily.c.rule_id)
        return [RuleMetricDaily(**row) for row in self._rows(stmt)]

    def find_rules(self, rule_ids):
        if not rule_ids:
            return {}
        stmt = (
            select(rules, users.c.user_id, users.c.handle, users.c.display_name, users.c.avatar_url)
            .select_from(rules.outerjoin(users, rules.c.created_by_user_id == users.c.user_id))
            .where(rules.c.id.in_(list(rule_ids)))
        )
        found = {}
        for row in self._rows(stmt):
            user_row = row if row["user_id"] is not None else None
            found[row["id"]] = _rule_info(row, user_row)
        return found

    def upsert_snapshot(self, snapshot):
        upsert(
            self.session,
            leaderboard_snapshots,
            {
                "period": snapshot.period.value,
                "scope": snapshot.scope.value,
                "scope_ref": snapshot.scope_ref,
                "date": snapshot.date,
            },
            {"data": snapshot.data(), "created_at": datetime.now(timezone.utc)},
        )

    def get_snapshot(self, period, scope, scope_ref, day):
        stmt = select(leaderboard_snapshots).where(
            leaderboard_snapshots.c.period == period.value,
            leaderboard_snapshots.c.scope == scope.value,
            leaderboard_snapshots.c.scope_ref == scope_ref,
            leaderboard_snapshots.c.date == day,
        )
        rows = self._rows(stmt)
        return _snapshot_from_row(rows[0]) if rows else None

    def popular_scope_refs(self, scope, limit, min_rules):
        if scope == LeaderboardScope.TAG:
            ref = rule_tags.c.tag_slug
            source = rule_tags.join(rules, rule_tags.c.rule_id == rules.c.id)
            where = rules.c.status == PUBLISHED
        elif scope == LeaderboardScope.MODEL:
            ref = rules.c.primary_model
            source = rules
            where = and_(rules.c.status == PUBLISHED, rules.c.primary_model.isnot(None))
        else:
            return []
        n = func.count().label("n")
        stmt = (
            select(ref, n)
            .select_from(source)
            .where(where)
            .group_by(ref)
            .having(func.count() >= min_rules)
            .order_by(n.desc(), ref)
            .limit(limit)
        )
        return [row[0] for row in self.session.execute(stmt)]

    def scoped_rule_ids(self, scope, scope_ref):
        if scope == LeaderboardScope.TAG:
            stmt = select(rule_tags.c.rule_id).where(rule_tags.c.tag_slug == scope_ref)
        elif scope == LeaderboardScope.MODEL:
            stmt = select(rules.c.id).where(rules.c.primary_model == scope_ref)
        else:
            stmt = select(rules.c.id)
        return sorted(row[0] for row in self.session.execute(stmt))

    def ensure_badges(self, catalog):
        insert_ignore(self.session, badges, [{"slug": slug, **info} for slug, info in catalog.items()])

    def award_badge(self, user_id, badge_slug, rule_id, awarded_at):
        written = insert_ignore(
            self.session,
            user_badges,
            [{"user_id": user_id, "badge_slug": badge_slug, "rule_id": rule_id, "awarded_at": awarded_at}],
        )
        return written > 0

    def rule_ids_with_metrics_on(self, day):
        stmt = select(rule_metric_daily.c.rule_id).distinct().where(rule_metric_daily.c.date == day)
        return sorted(row[0] for row in self.session.execute(stmt))

    def count_rule_events(self, rule_id, event_type):
        stmt = select(func.count()).select_from(events).where(
            events.c.rule_id == rule_id, events.c.type == event_type.value
        )
        return int(self.session.execute(stmt).scalar() or 0)

    def rule_ids_with_votes_between(self, start, end):
        stmt = select(votes.c.rule_id).distinct().where(votes.c.created_at >= start, votes.c.created_at < end)
        return sorted(row[0] for row in self.session.execute(stmt))

    def count_upvotes(self, rule_id):
        stmt = select(func.count()).select_from(votes).where(votes.c.rule_id == rule_id, votes.c.value > 0)
        return int(self.session.execute(stmt).scalar() or 0)


class SqlRollupRepository:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[SqlRollupUnit]:
        with get_db_session(self.session_factory) as session:
            yield SqlRollupUnit(session)


def day_bounds(day: date) -> tuple:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)
