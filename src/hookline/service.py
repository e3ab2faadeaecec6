"""Hookline service layer.

Combines storage, the endpoint registry, the dispatcher, and the retry
scheduler behind one object used by the API, the worker, and producers.

Example:
    ```python
    from hookline.service import WebhookService

    async with WebhookService.create() as hooks:
        endpoint, secret = await hooks.create_endpoint(
            "m_123", "https://merchant.example/hook", ["order.created"]
        )
        await hooks.emit("order.created", "m_123", {"order_id": "o_1"}, dedupe_key="o_1")
        page = await hooks.list_deliveries(endpoint.id, "m_123")
    ```
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
import pydantic

from hookline.config import Settings, load_settings
from hookline.exceptions import NotFoundError, ValidationError
from hookline.logging import get_logger
from hookline.models import (
    DeliveryPage,
    DeliveryStats,
    EndpointPatch,
    WebhookEvent,
    utc_now,
)
from hookline.storage import WebhookStorage
from hookline.webhooks import EndpointRegistry, RetryScheduler, WebhookDispatcher

if TYPE_CHECKING:
    from hookline.models import (
        DeliveryAttempt,
        EndpointStatus,
        TestDeliveryResult,
        WebhookEndpoint,
    )
    from hookline.webhooks import SweepResult

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def encode_cursor(requested_at: datetime, attempt_id: str) -> str:
    """Opaque keyset cursor for the row after which the next page starts."""
    raw = json.dumps([requested_at.isoformat(), attempt_id], separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """Inverse of encode_cursor.

    Raises:
        ValidationError: If the cursor was not produced by encode_cursor.
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        requested_at, attempt_id = json.loads(base64.urlsafe_b64decode(padded))
        return datetime.fromisoformat(requested_at), str(attempt_id)
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError) as e:
        raise ValidationError("cursor", "Invalid pagination cursor") from e


@dataclass
class WebhookService:
    """High-level webhook service.

    This service provides:
    - create/list/get/update/delete_endpoint(): merchant endpoint management
    - test_endpoint(): one synthetic delivery, reported synchronously
    - list_deliveries() / get_delivery_stats(): delivery history
    - dispatch() / emit(): deliver events to subscribed endpoints
    - sweep() / run_sweeper(): retry processing
    - cleanup_old_deliveries(): history retention

    Attributes:
        storage: Database storage.
        settings: Configuration settings.
        transport: Optional httpx transport for outbound requests.
        worker_id: Claim identity for this process (generated if None).
    """

    storage: WebhookStorage
    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None
    worker_id: str | None = None

    registry: EndpointRegistry = field(init=False, repr=False)
    scheduler: RetryScheduler = field(init=False, repr=False)
    dispatcher: WebhookDispatcher = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.registry = EndpointRegistry(self.storage, self.settings)
        self.scheduler = RetryScheduler(self.storage, self.registry, self.settings)
        self.dispatcher = WebhookDispatcher(
            self.storage,
            self.scheduler,
            self.settings,
            transport=self.transport,
            worker_id=self.worker_id,
        )
        self.worker_id = self.dispatcher.worker_id

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        worker_id: str | None = None,
    ) -> WebhookService:
        """Create a WebhookService with default dependencies.

        Args:
            settings: Optional settings. Uses environment if None.
            transport: Optional httpx transport (tests).
            worker_id: Optional claim identity.
        """
        if settings is None:
            settings = load_settings()
        return cls(
            storage=WebhookStorage(settings.database_url, echo=settings.database_echo),
            settings=settings,
            transport=transport,
            worker_id=worker_id,
        )

    async def initialize(self) -> None:
        """Initialize storage (engine and tables)."""
        await self.storage.initialize()

    async def close(self) -> None:
        await self.storage.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Endpoints

    async def create_endpoint(
        self, merchant_id: str, url: str, events: list[str]
    ) -> tuple[WebhookEndpoint, str]:
        return await self.registry.create(merchant_id, url, events)

    async def list_endpoints(
        self, merchant_id: str, status: EndpointStatus | None = None
    ) -> list[WebhookEndpoint]:
        return await self.registry.list_endpoints(merchant_id, status=status)

    async def get_endpoint(self, endpoint_id: str, merchant_id: str) -> WebhookEndpoint:
        return await self.registry.get(endpoint_id, merchant_id)

    async def update_endpoint(
        self, endpoint_id: str, merchant_id: str, patch: EndpointPatch
    ) -> WebhookEndpoint:
        return await self.registry.update(endpoint_id, merchant_id, patch)

    async def delete_endpoint(self, endpoint_id: str, merchant_id: str) -> None:
        await self.registry.delete(endpoint_id, merchant_id)

    async def test_endpoint(self, endpoint_id: str, merchant_id: str) -> TestDeliveryResult:
        """Send a synthetic test event to one of the merchant's endpoints.

        Raises:
            NotFoundError: Unknown, deleted, or another merchant's endpoint.
        """
        endpoint = await self.storage.get_endpoint(endpoint_id, merchant_id, with_secret=True)
        if endpoint is None:
            raise NotFoundError("webhook", endpoint_id)
        return await self.dispatcher.test(endpoint)

    # Delivery history

    async def _require_history_access(self, endpoint_id: str, merchant_id: str) -> None:
        # History outlives deletion, so tombstoned endpoints stay readable here
        endpoint = await self.storage.get_endpoint(endpoint_id, merchant_id, include_deleted=True)
        if endpoint is None:
            raise NotFoundError("webhook", endpoint_id)

    async def list_deliveries(
        self,
        endpoint_id: str,
        merchant_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> DeliveryPage:
        """List delivery attempts newest first.

        Raises:
            NotFoundError: Endpoint not owned by this merchant.
            ValidationError: limit outside 1..100 or malformed cursor.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")
        before = decode_cursor(cursor) if cursor else None
        await self._require_history_access(endpoint_id, merchant_id)

        rows = await self.storage.list_attempts(endpoint_id, limit=limit + 1, before=before)
        items = rows[:limit]
        next_cursor = None
        if len(rows) > limit:
            last = items[-1]
            next_cursor = encode_cursor(last.requested_at, last.id)
        return DeliveryPage(items=items, next_cursor=next_cursor)

    async def get_delivery_stats(self, endpoint_id: str, merchant_id: str) -> DeliveryStats:
        """Aggregate attempt counts for an endpoint."""
        endpoint = await self.storage.get_endpoint(endpoint_id, merchant_id, include_deleted=True)
        if endpoint is None:
            raise NotFoundError("webhook", endpoint_id)
        counts = await self.storage.attempt_stats(endpoint_id)
        return DeliveryStats(
            endpoint_id=endpoint_id,
            last_success_at=endpoint.last_success_at,
            last_failure_at=endpoint.last_failure_at,
            **counts,
        )

    # Events

    async def dispatch(self, event: WebhookEvent) -> list[DeliveryAttempt]:
        return await self.dispatcher.dispatch(event)

    async def emit(
        self,
        event_type: str,
        merchant_id: str,
        payload: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        occurred_at: datetime | None = None,
    ) -> list[DeliveryAttempt]:
        """Build an event from parts and dispatch it.

        Raises:
            ValidationError: Unknown event type or empty merchant id.
        """
        fields: dict[str, Any] = {
            "event_type": event_type,
            "merchant_id": merchant_id,
            "payload": payload or {},
        }
        if dedupe_key is not None:
            fields["dedupe_key"] = dedupe_key
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        try:
            event = WebhookEvent(**fields)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field_name = str(first["loc"][0]) if first["loc"] else "event"
            raise ValidationError(field_name, first["msg"]) from e
        return await self.dispatch(event)

    # Retries and maintenance

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        return await self.scheduler.sweep(self.dispatcher, now=now)

    async def run_sweeper(self, stop_event: asyncio.Event) -> None:
        await self.scheduler.run_forever(self.dispatcher, stop_event)

    async def cleanup_old_deliveries(self, days: int | None = None) -> int:
        """Delete delivery history older than the retention window.

        Returns:
            Number of attempt rows removed.
        """
        if days is None:
            days = self.settings.delivery_retention_days
        if days < 1:
            raise ValidationError("days", "must be at least 1")
        removed = await self.storage.delete_history_before(utc_now() - timedelta(days=days))
        logger.info("delivery_history_cleaned", days=days, removed=removed)
        return removed
