"""SQLAlchemy table definitions for Hookline."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamp stored as naive UTC, returned as aware UTC.

    TIMESTAMP WITHOUT TIME ZONE plus asyncpg rejects aware values, and
    SQLite has no timezone support at all, so the database only ever sees
    naive UTC while the application only ever sees aware UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class EndpointRow(Base):
    """Registered webhook endpoint (tombstoned on delete)."""

    __tablename__ = "webhook_endpoints"
    __table_args__ = (Index("ix_webhook_endpoints_merchant_status", "merchant_id", "status"),)

    id = Column(String(40), primary_key=True)
    merchant_id = Column(String(128), nullable=False)
    url = Column(Text, nullable=False)
    events = Column(JSON, nullable=False, default=list)
    secret = Column(String(80), nullable=False)
    status = Column(String(16), nullable=False, default="active")
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_success_at = Column(UTCDateTime, nullable=True)
    last_failure_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    deleted_at = Column(UTCDateTime, nullable=True)


class EventRow(Base):
    """Persisted event, so retries rebuild the exact envelope."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("merchant_id", "dedupe_key", name="ux_webhook_events_dedupe"),
    )

    id = Column(String(40), primary_key=True)
    merchant_id = Column(String(128), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(UTCDateTime, nullable=False)
    dedupe_key = Column(String(255), nullable=False)


class TaskRow(Base):
    """One row of scheduled work per (endpoint, event) pair."""

    __tablename__ = "webhook_delivery_tasks"
    __table_args__ = (
        UniqueConstraint("endpoint_id", "event_id", name="ux_webhook_tasks_pair"),
        Index("ix_webhook_tasks_state_next", "state", "next_attempt_at"),
        Index("ix_webhook_tasks_state_claimed", "state", "claimed_at"),
        Index("ix_webhook_tasks_endpoint_state", "endpoint_id", "state"),
    )

    id = Column(String(40), primary_key=True)
    endpoint_id = Column(String(40), nullable=False)
    event_id = Column(String(40), nullable=False)
    merchant_id = Column(String(128), nullable=False)
    state = Column(String(16), nullable=False, default="scheduled")
    attempt_number = Column(Integer, nullable=False, default=1)
    next_attempt_at = Column(UTCDateTime, nullable=False)
    claimed_by = Column(String(128), nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class AttemptRow(Base):
    """Delivery attempt audit trail.

    No foreign key to the endpoint: history outlives endpoint deletion.
    """

    __tablename__ = "webhook_delivery_attempts"
    __table_args__ = (
        UniqueConstraint(
            "endpoint_id", "event_id", "attempt_number", name="ux_webhook_attempts_number"
        ),
        Index("ix_webhook_attempts_endpoint_requested", "endpoint_id", "requested_at", "id"),
        Index("ix_webhook_attempts_requested", "requested_at"),
    )

    id = Column(String(40), primary_key=True)
    endpoint_id = Column(String(40), nullable=False)
    event_id = Column(String(40), nullable=False)
    event_type = Column(String(64), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    requested_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    http_status = Column(Integer, nullable=True)
    response_body_snippet = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    outcome = Column(String(16), nullable=False, default="pending")
    next_retry_at = Column(UTCDateTime, nullable=True)
