"""
ingest/tests/test_rollup_sql.py

Rollup engine against SQLite through the SQLAlchemy repository.
"""

import warnings
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import SAWarning

from ingest.conftest import make_settings
from ingest.core.database import (
    author_metric_daily,
    donations,
    get_db_session,
    leaderboard_snapshots,
    rule_metric_daily,
    rule_tags,
    rules,
    user_badges,
    users,
    votes,
)
from ingest.core.errors import RollupError
from ingest.features.events.models import EventType, PersistedEvent
from ingest.features.events.store import SqlEventStore
from ingest.features.rollup.models import LeaderboardPeriod, LeaderboardScope
from ingest.features.rollup.repository import SqlRollupRepository, SqlRollupUnit
from ingest.features.rollup.service import RollupEngine

TARGET = date(2026, 3, 4)
NOON = datetime(2026, 3, 4, 12, 0, 0, tzinfo=timezone.utc)


def event(event_type, rule_id, at, ip="ip-a"):
    return PersistedEvent(type=event_type, rule_id=rule_id, ip_hash=ip, ua_hash="ua", created_at=at)


@pytest.fixture
def seeded(sqlite_session_factory):
    with get_db_session(sqlite_session_factory) as session:
        session.execute(insert(users).values(user_id="author-1", handle="ada", display_name="Ada"))
        session.execute(insert(users).values(user_id="author-2", handle="bob"))
        session.execute(
            insert(rules),
            [
                {"id": "rule-1", "slug": "strict-types", "title": "Strict types", "primary_model": "gpt", "created_by_user_id": "author-1"},
                {"id": "rule-2", "slug": "no-mocks", "title": "No mocks", "primary_model": None, "created_by_user_id": "author-2"},
            ],
        )
        session.execute(insert(rule_tags), [{"rule_id": "rule-1", "tag_slug": "python"}, {"rule_id": "rule-2", "tag_slug": "python"}])
        session.execute(
            insert(donations).values(id="don-1", to_user_id="author-1", amount_cents=300, status="SUCCEEDED", created_at=NOON)
        )
        session.execute(
            insert(votes),
            [{"rule_id": "rule-2", "user_id": f"voter-{i}", "value": 1, "created_at": NOON} for i in range(10)],
        )

    store = SqlEventStore(sqlite_session_factory)
    store._insert(
        [event(EventType.VIEW, "rule-1", NOON + timedelta(minutes=i), ip=f"ip-{i}") for i in range(4)]
        + [event(EventType.COPY, "rule-1", NOON), event(EventType.VIEW, "rule-2", NOON)]
        # 1000 views from one IP within the day cap to 5
        + [event(EventType.VIEW, "rule-2", NOON.replace(hour=0) + timedelta(minutes=i), ip="ip-z") for i in range(1000)]
    )
    return sqlite_session_factory


def run(factory, **kwargs):
    engine = RollupEngine(SqlRollupRepository(factory), settings_obj=make_settings())
    return engine.perform_rollup_sync(TARGET, **kwargs)


def fetch(factory, table, *where):
    with get_db_session(factory) as session:
        return [dict(row._mapping) for row in session.execute(select(table).where(*where))]


def test_rule_metrics_are_written(seeded):
    result = run(seeded)
    assert result.rules_updated == 2
    rows = {row["rule_id"]: row for row in fetch(seeded, rule_metric_daily)}
    assert rows["rule-1"]["date"] == TARGET
    assert (rows["rule-1"]["views"], rows["rule-1"]["copies"]) == (4, 1)
    assert rows["rule-1"]["score"] == 1.9
    # one view from ip-a plus ip-z capped at 5
    assert rows["rule-2"]["views"] == 6


def test_rule_score_is_denormalized(seeded):
    run(seeded)
    (rule,) = fetch(seeded, rules, rules.c.id == "rule-1")
    assert rule["score"] == 1.9


def test_author_metrics_and_donations(seeded):
    run(seeded)
    (row,) = fetch(seeded, author_metric_daily, author_metric_daily.c.author_user_id == "author-1")
    assert (row["views"], row["copies"], row["score"]) == (4, 1, 6.0)
    assert (row["donations"], row["donations_cents"]) == (1, 300)


def test_snapshots_and_badges(seeded):
    result = run(seeded)
    assert result.snapshots.scoped == 2
    assert result.badges_awarded.top10_week == 2
    assert result.badges_awarded.ten_upvotes == 1

    (daily,) = fetch(
        seeded,
        leaderboard_snapshots,
        leaderboard_snapshots.c.period == LeaderboardPeriod.DAILY.value,
        leaderboard_snapshots.c.scope == LeaderboardScope.GLOBAL.value,
    )
    assert [entry["ruleId"] for entry in daily["data"]] == ["rule-2", "rule-1"]
    assert daily["data"][1]["author"]["displayName"] == "Ada"
    awarded = {(row["user_id"], row["badge_slug"]) for row in fetch(seeded, user_badges)}
    assert ("author-2", "ten-upvotes") in awarded


def test_rerun_upserts_in_place(seeded):
    run(seeded)
    run(seeded)
    assert len(fetch(seeded, rule_metric_daily)) == 2
    assert len(fetch(seeded, leaderboard_snapshots, leaderboard_snapshots.c.scope == "GLOBAL")) == 3
    assert len(fetch(seeded, user_badges)) == 3


def test_failure_rolls_back_everything(seeded, monkeypatch):
    def boom(self, metric):
        raise RuntimeError("disk full")

    monkeypatch.setattr(SqlRollupUnit, "upsert_author_metric", boom)
    with pytest.raises(RollupError):
        run(seeded)
    assert fetch(seeded, rule_metric_daily) == []
    assert fetch(seeded, rules, rules.c.score > 0) == []


def test_dry_run_writes_nothing(seeded):
    result = run(seeded, dry_run=True)
    assert (result.rules_updated, result.authors_updated) == (2, 2)
    assert fetch(seeded, rule_metric_daily) == []
    assert fetch(seeded, leaderboard_snapshots) == []


def test_distinct_queries_raise_no_sqlalchemy_warnings(seeded):
    with warnings.catch_warnings():
        warnings.simplefilter("error", SAWarning)
        result = run(seeded)
    assert (result.rules_updated, result.authors_updated) == (2, 2)
