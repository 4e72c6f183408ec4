"""
ingest/features/rollup/models.py

Typed shapes for rollup reads and writes. Aggregations that the ORM would
return as loosely-typed group-by results get an explicit model here.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeaderboardPeriod(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL = "ALL"


class LeaderboardScope(str, Enum):
    GLOBAL = "GLOBAL"
    TAG = "TAG"
    MODEL = "MODEL"


class DailyCounts(BaseModel):
    """One day of capped activity for a rule (index 0 = target day)."""

    views: int = 0
    copies: int = 0
    saves: int = 0
    forks: int = 0
    votes: int = 0


class RuleAggregate(BaseModel):
    """Output of aggregate_rule_events for one rule."""

    rule_id: str
    daily: List[DailyCounts]
    skipped_rate_limited: int = 0
    views_capped: int = 0


class RuleMetricDaily(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    rule_id: str
    views: int = Field(default=0, ge=0)
    copies: int = Field(default=0, ge=0)
    saves: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    votes: int = Field(default=0, ge=0)
    score: float = 0.0


class AuthorMetricDaily(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    author_user_id: str
    views: int = Field(default=0, ge=0)
    copies: int = Field(default=0, ge=0)
    saves: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    votes: int = Field(default=0, ge=0)
    score: float = 0.0
    donations: int = Field(default=0, ge=0)
    donations_cents: int = Field(default=0, ge=0)


class RuleMetricTotals(BaseModel):
    """Sum of RuleMetricDaily rows for one rule over a date range."""

    rule_id: str
    score: float = 0.0
    views: int = 0
    copies: int = 0


class AuthorSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    handle: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")


class RuleInfo(BaseModel):
    """Rule display data joined into leaderboard entries."""

    id: str
    slug: str
    title: str
    status: str = "PUBLISHED"
    primary_model: Optional[str] = None
    author: Optional[AuthorSummary] = None


class DonationRow(BaseModel):
    id: str
    to_user_id: str
    amount_cents: int
    status: str
    created_at: datetime


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rank: int = Field(ge=1)
    rule_id: str = Field(alias="ruleId")
    slug: str
    title: str
    author: Optional[AuthorSummary] = None
    score: float
    views: int
    copies: int


class LeaderboardSnapshot(BaseModel):
    period: LeaderboardPeriod
    scope: LeaderboardScope
    scope_ref: str = ""
    date: date
    entries: List[LeaderboardEntry] = Field(default_factory=list)

    def data(self) -> List[dict]:
        return [entry.model_dump(by_alias=True, mode="json") for entry in self.entries]


class SnapshotCounts(BaseModel):
    daily: int = 0
    weekly: int = 0
    monthly: int = 0
    all: Optional[int] = None
    scoped: int = 0


class BadgeCounts(BaseModel):
    hundred_copies: int = 0
    top10_week: int = 0
    ten_upvotes: int = 0


class RollupResult(BaseModel):
    rules_updated: int = 0
    authors_updated: int = 0
    snapshots: SnapshotCounts = Field(default_factory=SnapshotCounts)
    badges_awarded: BadgeCounts = Field(default_factory=BadgeCounts)
    took_ms: int = 0
    dry_run: bool = False

    def to_response(self) -> Dict[str, object]:
        snapshots = {
            "daily": self.snapshots.daily,
            "weekly": self.snapshots.weekly,
            "monthly": self.snapshots.monthly,
            "scoped": self.snapshots.scoped,
        }
        if self.snapshots.all is not None:
            snapshots["all"] = self.snapshots.all
        return {
            "rulesUpdated": self.rules_updated,
            "authorsUpdated": self.authors_updated,
            "snapshots": snapshots,
            "badgesAwarded": {
                "hundredCopies": self.badges_awarded.hundred_copies,
                "top10Week": self.badges_awarded.top10_week,
                "tenUpvotes": self.badges_awarded.ten_upvotes,
            },
            "tookMs": self.took_ms,
            "dryRun": self.dry_run,
        }
