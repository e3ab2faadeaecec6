"""FastAPI router for Hookline API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from hookline import __version__
from hookline.logging import bind_context
from hookline.models import EndpointPatch, EndpointStatus
from hookline.service import WebhookService

from .auth import MerchantContext, authenticate_merchant, security
from .helpers import (
    build_created_response,
    build_delivery_response,
    build_stats_response,
    build_webhook_response,
)
from .schemas import (
    CreateWebhookRequest,
    DeliveryListResponse,
    DeliveryStatsResponse,
    HealthResponse,
    TestWebhookResponse,
    UpdateWebhookRequest,
    WebhookCreatedResponse,
    WebhookListResponse,
    WebhookResponse,
)

router = APIRouter()

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


async def get_merchant(
    service: ServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    x_merchant_id: Annotated[str | None, Header()] = None,
) -> MerchantContext:
    """Dependency resolving the calling merchant and binding it to the log context."""
    merchant = authenticate_merchant(service.settings, credentials, x_merchant_id)
    bind_context(merchant_id=merchant.merchant_id)
    return merchant


MerchantDep = Annotated[MerchantContext, Depends(get_merchant)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is not None:
        return HealthResponse(status="healthy", version=__version__, storage_connected=True)
    return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)


@router.post(
    "/webhooks",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_webhook(
    request: CreateWebhookRequest,
    service: ServiceDep,
    merchant: MerchantDep,
) -> WebhookCreatedResponse:
    """Register a webhook endpoint.

    The response carries the signing secret. It is shown exactly once:
    no other endpoint ever returns it.

    Raises:
        ValidationError: Bad URL or event types (400).
    """
    endpoint, secret = await service.create_endpoint(
        merchant.merchant_id, request.url, request.events
    )
    return build_created_response(endpoint, secret)


@router.get("/webhooks", response_model=WebhookListResponse, tags=["webhooks"])
async def list_webhooks(
    service: ServiceDep,
    merchant: MerchantDep,
    endpoint_status: Annotated[EndpointStatus | None, Query(alias="status")] = None,
) -> WebhookListResponse:
    """List the merchant's endpoints, optionally filtered by status."""
    endpoints = await service.list_endpoints(
        merchant.merchant_id, status=endpoint_status
    )
    webhooks = [build_webhook_response(e) for e in endpoints]
    return WebhookListResponse(webhooks=webhooks, count=len(webhooks))


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def get_webhook(
    webhook_id: str,
    service: ServiceDep,
    merchant: MerchantDep,
) -> WebhookResponse:
    """Get one endpoint. Unknown ids and other merchants' ids are both 404."""
    endpoint = await service.get_endpoint(webhook_id, merchant.merchant_id)
    return build_webhook_response(endpoint)


@router.patch("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    service: ServiceDep,
    merchant: MerchantDep,
) -> WebhookResponse:
    """Update url, events, or status.

    Setting status to "active" reactivates a disabled endpoint and
    resets its failure counter.
    """
    patch = EndpointPatch(**request.model_dump(exclude_unset=True))
    endpoint = await service.update_endpoint(webhook_id, merchant.merchant_id, patch)
    return build_webhook_response(endpoint)


@router.delete(
    "/webhooks/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["webhooks"],
)
async def delete_webhook(
    webhook_id: str,
    service: ServiceDep,
    merchant: MerchantDep,
) -> Response:
    """Delete an endpoint and cancel its pending retries. History is kept."""
    await service.delete_endpoint(webhook_id, merchant.merchant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/webhooks/{webhook_id}/test",
    response_model=TestWebhookResponse,
    tags=["webhooks"],
)
async def test_webhook(
    webhook_id: str,
    service: ServiceDep,
    merchant: MerchantDep,
) -> TestWebhookResponse:
    """Send a webhook.test event once and report the outcome synchronously."""
    result = await service.test_endpoint(webhook_id, merchant.merchant_id)
    return TestWebhookResponse(
        success=result.success,
        message=result.message,
        http_status=result.http_status,
        delivery_id=result.attempt_id,
    )


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    tags=["deliveries"],
)
async def list_deliveries(
    webhook_id: str,
    service: ServiceDep,
    merchant: MerchantDep,
    limit: int = 20,
    cursor: str | None = None,
) -> DeliveryListResponse:
    """List delivery attempts for an endpoint, newest first.

    Args:
        webhook_id: Endpoint ID.
        limit: Page size (1-100).
        cursor: next_cursor from the previous page.
    """
    page = await service.list_deliveries(
        webhook_id, merchant.merchant_id, limit=limit, cursor=cursor
    )
    deliveries = [build_delivery_response(a) for a in page.items]
    return DeliveryListResponse(
        deliveries=deliveries,
        count=len(deliveries),
        next_cursor=page.next_cursor,
    )


@router.get(
    "/webhooks/{webhook_id}/stats",
    response_model=DeliveryStatsResponse,
    tags=["deliveries"],
)
async def get_webhook_stats(
    webhook_id: str,
    service: ServiceDep,
    merchant: MerchantDep,
) -> DeliveryStatsResponse:
    """Aggregate delivery statistics for an endpoint."""
    stats = await service.get_delivery_stats(webhook_id, merchant.merchant_id)
    return build_stats_response(stats)
