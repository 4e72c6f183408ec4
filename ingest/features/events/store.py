"""
Event persistence.

EventStore is the seam between the ingestion pipeline and storage:
- insert_events(rows) -> number of rows written (duplicates by
  idempotency_key are skipped, not raised)
- find_events(filter) -> rows ordered by created_at

InMemoryEventStore backs tests and local dev; SqlEventStore writes the
events table through SQLAlchemy and runs its blocking work in a threadpool.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import select
from starlette.concurrency import run_in_threadpool

from ingest.core.database import as_utc, events, get_db_session, insert_ignore
from ingest.core.memory import MemoryDatabase
from ingest.features.events.models import EventFilter, PersistedEvent

logger = logging.getLogger("ingest.events.store")


class EventStore(Protocol):
    async def insert_events(self, rows: Sequence[PersistedEvent]) -> int: ...

    async def find_events(self, event_filter: EventFilter) -> List[PersistedEvent]: ...


def _to_row(event: PersistedEvent) -> dict:
    return {
        "type": event.type.value,
        "user_id": event.user_id,
        "rule_id": event.rule_id,
        "rule_version_id": event.rule_version_id,
        "ip_hash": event.ip_hash,
        "ua_hash": event.ua_hash,
        "idempotency_key": event.idempotency_key,
        "created_at": event.created_at,
    }


def _from_row(row) -> PersistedEvent:
    return PersistedEvent(
        type=row["type"],
        user_id=row["user_id"],
        rule_id=row["rule_id"],
        rule_version_id=row["rule_version_id"],
        ip_hash=row["ip_hash"],
        ua_hash=row["ua_hash"],
        idempotency_key=row["idempotency_key"],
        created_at=as_utc(row["created_at"]),
    )


class InMemoryEventStore:
    def __init__(self, db: Optional[MemoryDatabase] = None):
        self.db = db or MemoryDatabase()

    async def insert_events(self, rows: Sequence[PersistedEvent]) -> int:
        written = 0
        with self.db.lock:
            seen_keys = {r["idempotency_key"] for r in self.db.tables.events if r["idempotency_key"]}
            for event in rows:
                if event.idempotency_key and event.idempotency_key in seen_keys:
                    continue
                row = _to_row(event)
                row["id"] = len(self.db.tables.events) + 1
                self.db.tables.events.append(row)
                if event.idempotency_key:
                    seen_keys.add(event.idempotency_key)
                written += 1
        return written

    async def find_events(self, event_filter: EventFilter) -> List[PersistedEvent]:
        with self.db.lock:
            rows = list(self.db.tables.events)
        found = [e for e in (_from_row(r) for r in rows) if event_filter.matches(e)]
        return sorted(found, key=lambda e: e.created_at)

    def count(self) -> int:
        with self.db.lock:
            return len(self.db.tables.events)


def build_events_query(event_filter: EventFilter):
    stmt = select(events)
    if event_filter.start is not None:
        stmt = stmt.where(events.c.created_at >= event_filter.start)
    if event_filter.end is not None:
        stmt = stmt.where(events.c.created_at < event_filter.end)
    if event_filter.rule_id is not None:
        stmt = stmt.where(events.c.rule_id == event_filter.rule_id)
    if event_filter.rule_ids is not None:
        stmt = stmt.where(events.c.rule_id.in_(event_filter.rule_ids))
    if event_filter.types is not None:
        stmt = stmt.where(events.c.type.in_([t.value for t in event_filter.types]))
    return stmt.order_by(events.c.created_at, events.c.id)


class SqlEventStore:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def _insert(self, rows: Sequence[PersistedEvent]) -> int:
        with get_db_session(self.session_factory) as session:
            return insert_ignore(session, events, [_to_row(event) for event in rows])

    def _find(self, event_filter: EventFilter) -> List[PersistedEvent]:
        with get_db_session(self.session_factory) as session:
            result = session.execute(build_events_query(event_filter))
            return [_from_row(row._mapping) for row in result]

    async def insert_events(self, rows: Sequence[PersistedEvent]) -> int:
        if not rows:
            return 0
        return await run_in_threadpool(self._insert, list(rows))

    async def find_events(self, event_filter: EventFilter) -> List[PersistedEvent]:
        return await run_in_threadpool(self._find, event_filter)
