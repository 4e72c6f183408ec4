"""
In-memory stand-in for the SQL tables in ingest.core.database.

Used when DATABASE_URL is not configured (local dev) and throughout the
tests. Rows are plain dicts keyed by the same column names as the SQL
tables so both backends read the same way.
"""

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

Row = Dict[str, Any]


@dataclass
class MemoryTables:
    users: Dict[str, Row] = field(default_factory=dict)
    rules: Dict[str, Row] = field(default_factory=dict)
    rule_tags: List[Row] = field(default_factory=list)
    events: List[Row] = field(default_factory=list)
    votes: List[Row] = field(default_factory=list)
    donations: List[Row] = field(default_factory=list)
    rule_metric_daily: Dict[Tuple, Row] = field(default_factory=dict)
    author_metric_daily: Dict[Tuple, Row] = field(default_factory=dict)
    leaderboard_snapshots: Dict[Tuple, Row] = field(default_factory=dict)
    badges: Dict[str, Row] = field(default_factory=dict)
    user_badges: Dict[Tuple, Row] = field(default_factory=dict)
    audit_log: List[Row] = field(default_factory=list)

    def snapshot(self) -> "MemoryTables":
        return copy.deepcopy(self)

    def restore(self, other: "MemoryTables") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(other, name))


class MemoryDatabase:
    """MemoryTables plus the lock that serializes writers."""

    def __init__(self, tables: MemoryTables = None):
        self.tables = tables or MemoryTables()
        self.lock = threading.RLock()

    def add_user(self, user_id: str, handle: str = None, display_name: str = None, avatar_url: str = None) -> Row:
        row = {"user_id": user_id, "handle": handle, "display_name": display_name, "avatar_url": avatar_url}
        with self.lock:
            self.tables.users[user_id] = row
        return row

    def add_rule(
        self,
        rule_id: str,
        *,
        slug: str = None,
        title: str = None,
        author_id: str = None,
        status: str = "PUBLISHED",
        primary_model: str = None,
        tags: List[str] = (),
    ) -> Row:
        row = {
            "id": rule_id,
            "slug": slug or rule_id,
            "title": title or rule_id,
            "status": status,
            "primary_model": primary_model,
            "created_by_user_id": author_id,
            "score": 0.0,
        }
        with self.lock:
            self.tables.rules[rule_id] = row
            for tag in tags:
                self.tables.rule_tags.append({"rule_id": rule_id, "tag_slug": tag})
        return row

    def add_vote(self, rule_id: str, user_id: str, created_at, value: int = 1) -> Row:
        row = {"rule_id": rule_id, "user_id": user_id, "value": value, "created_at": created_at}
        with self.lock:
            self.tables.votes = [
                v for v in self.tables.votes if not (v["rule_id"] == rule_id and v["user_id"] == user_id)
            ]
            self.tables.votes.append(row)
        return row

    def add_donation(self, donation_id: str, to_user_id: str, amount_cents: int, created_at, status: str = "SUCCEEDED") -> Row:
        row = {
            "id": donation_id,
            "to_user_id": to_user_id,
            "amount_cents": amount_cents,
            "status": status,
            "created_at": created_at,
        }
        with self.lock:
            self.tables.donations.append(row)
        return row

    def add_event(self, event_type: str, rule_id: str, created_at, *, ip_hash: str = "ip", ua_hash: str = "ua", user_id: str = None) -> Row:
        """Append a raw events row, bypassing the ingestion guards."""
        with self.lock:
            row = {
                "id": len(self.tables.events) + 1,
                "type": event_type,
                "user_id": user_id,
                "rule_id": rule_id,
                "rule_version_id": None,
                "ip_hash": ip_hash,
                "ua_hash": ua_hash,
                "idempotency_key": None,
                "created_at": created_at,
            }
            self.tables.events.append(row)
        return row
