"""
ingest/features/events/models.py

Event shapes as they move through the pipeline:
IncomingEvent (client payload) -> EnrichedEvent (hashed identity, resolved
timestamp) -> PersistedEvent (row in the events table).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MAX_BATCH_SIZE = 100
MAX_IDEMPOTENCY_KEY_LENGTH = 255


class EventType(str, Enum):
    VIEW = "VIEW"
    COPY = "COPY"
    SAVE = "SAVE"
    FORK = "FORK"
    COMMENT = "COMMENT"
    VOTE = "VOTE"
    DONATE = "DONATE"
    CLAIM = "CLAIM"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IncomingEvent(BaseModel):
    """One behavioral signal submitted by a client. Never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: EventType
    rule_id: Optional[str] = Field(default=None, alias="ruleId", min_length=1, max_length=100)
    rule_version_id: Optional[str] = Field(default=None, alias="ruleVersionId", min_length=1, max_length=100)
    user_id: Optional[str] = Field(default=None, alias="userId", min_length=1, max_length=100)
    ts: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("ts", "timestamp"))
    idempotency_key: Optional[str] = Field(
        default=None,
        alias="idempotencyKey",
        max_length=MAX_IDEMPOTENCY_KEY_LENGTH,
    )

    @field_validator("ts")
    @classmethod
    def _normalize_ts(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class EventBatch(BaseModel):
    """Request body for POST /ingest/events."""

    events: List[IncomingEvent] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


class EnrichedEvent(BaseModel):
    """IncomingEvent plus derived identity hashes. Never persisted directly."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    rule_id: Optional[str] = None
    rule_version_id: Optional[str] = None
    user_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    ip_hash: str
    ua_hash: str
    created_at: datetime

    @classmethod
    def from_incoming(cls, event: IncomingEvent, *, ip_hash: str, ua_hash: str, now: datetime) -> "EnrichedEvent":
        return cls(
            type=event.type,
            rule_id=event.rule_id,
            rule_version_id=event.rule_version_id,
            user_id=event.user_id,
            idempotency_key=event.idempotency_key,
            ip_hash=ip_hash,
            ua_hash=ua_hash,
            created_at=event.ts or now,
        )

    @property
    def burst_group(self) -> tuple:
        return (self.type.value, self.rule_id or "global", self.ip_hash)

    def to_persisted(self) -> "PersistedEvent":
        return PersistedEvent(
            type=self.type,
            user_id=self.user_id,
            rule_id=self.rule_id,
            rule_version_id=self.rule_version_id,
            ip_hash=self.ip_hash,
            ua_hash=self.ua_hash,
            created_at=self.created_at,
            idempotency_key=self.idempotency_key,
        )


class PersistedEvent(BaseModel):
    """Durable event record, read back by the rollup engine."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    user_id: Optional[str] = None
    rule_id: Optional[str] = None
    rule_version_id: Optional[str] = None
    ip_hash: str
    ua_hash: str
    created_at: datetime
    idempotency_key: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)


class EventFilter(BaseModel):
    """Query for stored events. Bounds are [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    rule_id: Optional[str] = None
    rule_ids: Optional[List[str]] = None
    types: Optional[List[EventType]] = None

    def matches(self, event: PersistedEvent) -> bool:
        if self.start is not None and event.created_at < self.start:
            return False
        if self.end is not None and event.created_at >= self.end:
            return False
        if self.rule_id is not None and event.rule_id != self.rule_id:
            return False
        if self.rule_ids is not None and event.rule_id not in self.rule_ids:
            return False
        if self.types is not None and event.type not in self.types:
            return False
        return True


class IngestResult(BaseModel):
    accepted: int = 0
    deduped: int = 0
    blocked: int = 0
    anomalies: int = 0
