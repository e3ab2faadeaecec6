"""Webhook models for merchant event notifications.

Covers endpoint registration, the events delivered to endpoints, the
durable per-(endpoint, event) delivery task, and the audit trail of
individual delivery attempts.
"""

import hashlib
from datetime import datetime
from typing import Any, Literal, get_args
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import generate_id, truncate, utc_now

# Event types merchants can subscribe to
EventType = Literal[
    "chat.query.completed",
    "chat.query.failed",
    "document.created",
    "document.updated",
    "document.deleted",
    "usage.limit.approaching",
    "usage.limit.exceeded",
    "api_key.expiring",
    "billing.payment.succeeded",
    "billing.payment.failed",
    "order.created",
    "order.updated",
]

ALL_EVENT_TYPES: list[EventType] = list(get_args(EventType))

# Synthetic event used by the test operation; never subscribable
TEST_EVENT_TYPE = "webhook.test"

AnyEventType = EventType | Literal["webhook.test"]

EndpointStatus = Literal["active", "disabled"]

AttemptOutcome = Literal["pending", "success", "failed"]

TaskState = Literal["scheduled", "in_flight", "succeeded", "exhausted", "cancelled"]

# Task states that still have work ahead of them
OPEN_TASK_STATES: tuple[TaskState, ...] = ("scheduled", "in_flight")

DEFAULT_SNIPPET_CHARS = 1000


def derive_event_id(merchant_id: str, dedupe_key: str) -> str:
    """Deterministic event id for a (merchant, dedupe key) pair."""
    digest = hashlib.sha256(f"{merchant_id}:{dedupe_key}".encode()).hexdigest()
    return f"evt_{digest[:24]}"


class WebhookEndpoint(BaseModel):
    """A merchant-registered URL that receives signed event deliveries.

    Attributes:
        id: Unique identifier ("whk_" prefix).
        merchant_id: Merchant who owns this endpoint.
        url: HTTPS URL receiving POSTed events.
        events: Event types this endpoint subscribes to.
        secret: HMAC signing secret. Only populated on the value returned
            from creation and on internal reads by the dispatcher.
        status: active or disabled.
        consecutive_failures: Exhausted events since the last success.
        last_success_at: When a delivery last succeeded.
        last_failure_at: When a pair was last exhausted.
        deleted_at: Tombstone timestamp; deleted endpoints are invisible.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    merchant_id: str = Field(min_length=1, description="Merchant who owns this endpoint")
    url: str = Field(description="HTTPS endpoint receiving events")
    events: list[EventType] = Field(description="Subscribed event types")
    secret: str | None = Field(default=None, repr=False, description="HMAC signing secret")
    status: EndpointStatus = Field(default="active", description="Endpoint status")
    consecutive_failures: int = Field(default=0, ge=0, description="Exhausted events in a row")
    last_success_at: datetime | None = Field(default=None)
    last_failure_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = Field(default=None)

    @property
    def is_active(self) -> bool:
        return self.status == "active" and self.deleted_at is None

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint should receive the given event type."""
        return self.is_active and event_type in self.events

    def redacted(self) -> "WebhookEndpoint":
        """Copy of this endpoint without the secret."""
        return self.model_copy(update={"secret": None})


class EndpointPatch(BaseModel):
    """Partial update for an endpoint. Unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    events: list[str] | None = None
    status: EndpointStatus | None = None


class WebhookEvent(BaseModel):
    """Something that happened in the merchant's account.

    The id is derived from (merchant_id, dedupe_key), so producing the same
    occurrence twice yields the same event and is delivered at most once
    per endpoint.

    Attributes:
        id: Derived event identifier ("evt_" prefix).
        event_type: One of the subscribable event types, or "webhook.test".
        merchant_id: Merchant the event belongs to.
        payload: Event-specific JSON object.
        occurred_at: When the event happened.
        dedupe_key: Producer-supplied idempotency key (random if omitted).
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default="", description="Derived from merchant_id and dedupe_key")
    event_type: AnyEventType = Field(description="Event type")
    merchant_id: str = Field(min_length=1, description="Merchant the event belongs to")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")
    occurred_at: datetime = Field(default_factory=utc_now)
    dedupe_key: str = Field(default_factory=lambda: uuid4().hex, min_length=1)

    @model_validator(mode="after")
    def _derive_id(self) -> "WebhookEvent":
        self.id = derive_event_id(self.merchant_id, self.dedupe_key)
        return self

    @classmethod
    def for_chat_query(
        cls,
        merchant_id: str,
        query_id: str,
        succeeded: bool,
        latency_ms: int | None = None,
        error: str | None = None,
    ) -> "WebhookEvent":
        """Create a chat.query.completed / chat.query.failed event."""
        payload: dict[str, Any] = {"query_id": query_id}
        if latency_ms is not None:
            payload["latency_ms"] = latency_ms
        if error is not None:
            payload["error"] = error
        return cls(
            event_type="chat.query.completed" if succeeded else "chat.query.failed",
            merchant_id=merchant_id,
            payload=payload,
            dedupe_key=f"chat.query:{query_id}",
        )

    @classmethod
    def for_document(
        cls,
        merchant_id: str,
        document_id: str,
        action: Literal["created", "updated", "deleted"],
    ) -> "WebhookEvent":
        """Create a document lifecycle event."""
        return cls(
            event_type=f"document.{action}",  # type: ignore[arg-type]
            merchant_id=merchant_id,
            payload={"document_id": document_id},
        )

    @classmethod
    def for_usage_limit(
        cls,
        merchant_id: str,
        metric: str,
        used: int,
        limit: int,
        period: str,
    ) -> "WebhookEvent":
        """Create usage.limit.approaching or usage.limit.exceeded.

        One event per (metric, period, kind) so repeated checks in the same
        billing period do not notify twice.
        """
        kind = "exceeded" if used >= limit else "approaching"
        return cls(
            event_type=f"usage.limit.{kind}",  # type: ignore[arg-type]
            merchant_id=merchant_id,
            payload={"metric": metric, "used": used, "limit": limit, "period": period},
            dedupe_key=f"usage:{metric}:{period}:{kind}",
        )

    @classmethod
    def for_test(cls, merchant_id: str, endpoint_id: str) -> "WebhookEvent":
        """Create the synthetic event sent by the test operation."""
        return cls(
            event_type=TEST_EVENT_TYPE,
            merchant_id=merchant_id,
            payload={
                "message": "This is a test webhook delivery",
                "webhook_id": endpoint_id,
            },
        )


class DeliveryAttempt(BaseModel):
    """One HTTP delivery attempt of an event to an endpoint.

    Attempt numbers per (endpoint, event) pair start at 1 and increase
    without gaps.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    endpoint_id: str
    event_id: str
    event_type: AnyEventType
    attempt_number: int = Field(ge=1)
    requested_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    http_status: int | None = None
    response_body_snippet: str | None = None
    error: str | None = None
    outcome: AttemptOutcome = "pending"
    next_retry_at: datetime | None = None

    def mark_success(
        self,
        http_status: int,
        response_body: str | None = None,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
    ) -> "DeliveryAttempt":
        """Mark attempt as successful."""
        self.outcome = "success"
        self.completed_at = utc_now()
        self.http_status = http_status
        self.response_body_snippet = truncate(response_body, snippet_chars) or None
        self.error = None
        return self

    def mark_failed(
        self,
        error: str,
        http_status: int | None = None,
        response_body: str | None = None,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
    ) -> "DeliveryAttempt":
        """Mark attempt as failed. Whether it is retried is the scheduler's call."""
        self.outcome = "failed"
        self.completed_at = utc_now()
        self.error = error
        self.http_status = http_status
        self.response_body_snippet = truncate(response_body, snippet_chars) or None
        return self


class DeliveryTask(BaseModel):
    """Durable scheduled work for one (endpoint, event) pair.

    State machine:
        scheduled -> in_flight -> succeeded
                              -> scheduled (retry with backoff)
                              -> exhausted (attempts used up)
        scheduled | in_flight -> cancelled (endpoint deleted or disabled)
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("tsk"))
    endpoint_id: str
    event_id: str
    merchant_id: str
    state: TaskState = "scheduled"
    attempt_number: int = Field(default=1, ge=1, description="Current or next attempt number")
    next_attempt_at: datetime = Field(default_factory=utc_now)
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class DeliveryPage(BaseModel):
    """One page of delivery history, newest first."""

    items: list[DeliveryAttempt]
    next_cursor: str | None = None


class DeliveryStats(BaseModel):
    """Aggregate delivery statistics for one endpoint."""

    endpoint_id: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    average_attempt_number: float = 0.0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class TestDeliveryResult(BaseModel):
    """Outcome of a synthetic test delivery."""

    __test__ = False  # not a pytest test class

    success: bool
    message: str
    http_status: int | None = None
    attempt_id: str


__all__ = [
    "ALL_EVENT_TYPES",
    "AnyEventType",
    "AttemptOutcome",
    "DEFAULT_SNIPPET_CHARS",
    "DeliveryAttempt",
    "DeliveryPage",
    "DeliveryStats",
    "DeliveryTask",
    "EndpointPatch",
    "EndpointStatus",
    "EventType",
    "OPEN_TASK_STATES",
    "TEST_EVENT_TYPE",
    "TaskState",
    "TestDeliveryResult",
    "WebhookEndpoint",
    "WebhookEvent",
    "derive_event_id",
]
