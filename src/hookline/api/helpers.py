"""Response builders shared by the API routes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .schemas import (
    DeliveryResponse,
    DeliveryStatsResponse,
    WebhookCreatedResponse,
    WebhookResponse,
)

if TYPE_CHECKING:
    from hookline.models import DeliveryAttempt, DeliveryStats, WebhookEndpoint


def _endpoint_fields(endpoint: WebhookEndpoint) -> dict[str, object]:
    return {
        "id": endpoint.id,
        "url": endpoint.url,
        "events": list(endpoint.events),
        "status": endpoint.status,
        "consecutive_failures": endpoint.consecutive_failures,
        "last_success_at": endpoint.last_success_at,
        "last_failure_at": endpoint.last_failure_at,
        "created_at": endpoint.created_at,
        "updated_at": endpoint.updated_at,
    }


def build_webhook_response(endpoint: WebhookEndpoint) -> WebhookResponse:
    return WebhookResponse(**_endpoint_fields(endpoint))  # type: ignore[arg-type]


def build_created_response(endpoint: WebhookEndpoint, secret: str) -> WebhookCreatedResponse:
    return WebhookCreatedResponse(**_endpoint_fields(endpoint), secret=secret)  # type: ignore[arg-type]


def build_delivery_response(attempt: DeliveryAttempt) -> DeliveryResponse:
    return DeliveryResponse(
        id=attempt.id,
        event_id=attempt.event_id,
        event_type=attempt.event_type,
        attempt_number=attempt.attempt_number,
        outcome=attempt.outcome,
        http_status=attempt.http_status,
        response_body_snippet=attempt.response_body_snippet,
        error=attempt.error,
        requested_at=attempt.requested_at,
        completed_at=attempt.completed_at,
        next_retry_at=attempt.next_retry_at,
    )


def build_stats_response(stats: DeliveryStats) -> DeliveryStatsResponse:
    """Convert service stats, deriving the success rate over completed attempts.

    Examples:
        >>> from hookline.models import DeliveryStats
        >>> build_stats_response(
        ...     DeliveryStats(endpoint_id="whk_1", total=4, succeeded=3, failed=1)
        ... ).success_rate
        0.75
    """
    completed = stats.succeeded + stats.failed
    return DeliveryStatsResponse(
        webhook_id=stats.endpoint_id,
        total=stats.total,
        succeeded=stats.succeeded,
        failed=stats.failed,
        pending=stats.pending,
        success_rate=round(stats.succeeded / completed, 4) if completed else 0.0,
        average_attempt_number=stats.average_attempt_number,
        last_success_at=stats.last_success_at,
        last_failure_at=stats.last_failure_at,
    )
