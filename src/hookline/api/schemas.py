"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from hookline.models import EndpointStatus

SECRET_WARNING = "Store this secret now. It cannot be retrieved again."


class CreateWebhookRequest(BaseModel):
    """Request body for registering an endpoint.

    Attributes:
        url: HTTPS URL that receives events.
        events: Event types to subscribe to.
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="HTTPS URL that receives events")
    events: list[str] = Field(description="Event types to subscribe to")


class UpdateWebhookRequest(BaseModel):
    """Request body for updating an endpoint. Omitted fields are unchanged."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(default=None, description="New HTTPS URL")
    events: list[str] | None = Field(default=None, description="New subscription list")
    status: EndpointStatus | None = Field(
        default=None,
        description="Set to 'active' to reactivate a disabled endpoint",
    )


class WebhookResponse(BaseModel):
    """Response model for an endpoint. Never includes the secret.

    Attributes:
        id: Endpoint ID.
        url: Delivery URL.
        events: Subscribed event types.
        status: active or disabled.
        consecutive_failures: Exhausted events since the last success.
        last_success_at: Last successful delivery.
        last_failure_at: Last exhausted delivery.
        created_at: Registration time.
        updated_at: Last modification time.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    url: str
    events: list[str]
    status: EndpointStatus
    consecutive_failures: int
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Creation response: the only place the signing secret is ever returned."""

    secret: str = Field(description="HMAC signing secret")
    warning: str = Field(default=SECRET_WARNING)


class WebhookListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    webhooks: list[WebhookResponse]
    count: int


class DeliveryResponse(BaseModel):
    """One delivery attempt.

    Attributes:
        id: Attempt ID.
        event_id: Delivered event.
        event_type: Type of the delivered event.
        attempt_number: 1-based attempt number for this event.
        outcome: pending, success, or failed.
        http_status: Response status, if a response was received.
        response_body_snippet: Truncated response body.
        error: Failure description.
        requested_at: When the request started.
        completed_at: When the outcome was recorded.
        next_retry_at: When the next attempt is scheduled, if any.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    event_id: str
    event_type: str
    attempt_number: int
    outcome: Literal["pending", "success", "failed"]
    http_status: int | None = None
    response_body_snippet: str | None = None
    error: str | None = None
    requested_at: datetime
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None


class DeliveryListResponse(BaseModel):
    """A page of deliveries, newest first. Pass next_cursor to continue."""

    model_config = ConfigDict(extra="forbid")

    deliveries: list[DeliveryResponse]
    count: int
    next_cursor: str | None = None


class DeliveryStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    total: int
    succeeded: int
    failed: int
    pending: int
    success_rate: float = Field(description="succeeded / completed, 0 when none completed")
    average_attempt_number: float
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class TestWebhookResponse(BaseModel):
    """Result of a synthetic test delivery."""

    __test__ = False

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str
    http_status: int | None = None
    delivery_id: str


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        storage_connected: Whether storage is connected.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool
