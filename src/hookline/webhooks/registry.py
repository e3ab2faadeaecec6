"""Endpoint registry: validated, tenant-scoped endpoint management."""

from __future__ import annotations

import ipaddress
import secrets
from typing import TYPE_CHECKING

import httpx

from hookline.exceptions import InvalidEventTypeError, InvalidUrlError, NotFoundError
from hookline.logging import get_logger
from hookline.models import ALL_EVENT_TYPES, EndpointPatch, WebhookEndpoint, utc_now

if TYPE_CHECKING:
    from hookline.config import Settings
    from hookline.models import EndpointStatus, EventType
    from hookline.storage import WebhookStorage

logger = get_logger(__name__)

MAX_URL_LENGTH = 2048
SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    """New signing secret: 256 bits of randomness, hex encoded."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def _is_loopback(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def validate_url(url: str, allow_insecure_localhost: bool = False) -> str:
    """Validate an endpoint URL.

    Raises:
        InvalidUrlError: If the URL is malformed, not HTTPS, or plain HTTP
            to a non-loopback host.
    """
    url = url.strip()
    if not url or len(url) > MAX_URL_LENGTH:
        raise InvalidUrlError(f"URL must be between 1 and {MAX_URL_LENGTH} characters")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise InvalidUrlError(f"Malformed URL: {e}") from e

    if not parsed.host:
        raise InvalidUrlError("URL must include a host")
    if parsed.userinfo:
        raise InvalidUrlError("URL must not embed credentials")
    if parsed.scheme == "https":
        return url
    if parsed.scheme == "http" and allow_insecure_localhost and _is_loopback(parsed.host):
        return url
    raise InvalidUrlError("URL must use HTTPS")


def validate_events(events: list[str]) -> list[EventType]:
    """Validate a subscription list against the closed event set.

    Duplicates are dropped, order is preserved.

    Raises:
        InvalidEventTypeError: If the list is empty or names an unknown type.
    """
    if not events:
        raise InvalidEventTypeError("At least one event type is required")
    unknown = [e for e in events if e not in ALL_EVENT_TYPES]
    if unknown:
        raise InvalidEventTypeError(f"Unknown event type(s): {', '.join(sorted(set(unknown)))}")
    return list(dict.fromkeys(events))  # type: ignore[arg-type]


class EndpointRegistry:
    """Creates, reads, updates, and deletes merchant webhook endpoints.

    Every operation is scoped to a merchant: ids owned by another merchant
    behave exactly like ids that do not exist.
    """

    def __init__(self, storage: WebhookStorage, settings: Settings) -> None:
        self._storage = storage
        self._settings = settings

    async def create(
        self,
        merchant_id: str,
        url: str,
        events: list[str],
    ) -> tuple[WebhookEndpoint, str]:
        """Register a new endpoint.

        Returns:
            (endpoint without secret, secret). The secret is not readable
            again after this call.

        Raises:
            InvalidUrlError: Bad URL.
            InvalidEventTypeError: Empty or unknown event types.
        """
        secret = generate_secret()
        endpoint = WebhookEndpoint(
            merchant_id=merchant_id,
            url=validate_url(url, self._settings.allow_insecure_localhost),
            events=validate_events(events),
            secret=secret,
        )
        await self._storage.insert_endpoint(endpoint)
        logger.info(
            "endpoint_created",
            merchant_id=merchant_id,
            endpoint_id=endpoint.id,
            events=endpoint.events,
        )
        return endpoint.redacted(), secret

    async def list_endpoints(
        self,
        merchant_id: str,
        status: EndpointStatus | None = None,
    ) -> list[WebhookEndpoint]:
        return await self._storage.list_endpoints(merchant_id, status=status)

    async def get(self, endpoint_id: str, merchant_id: str) -> WebhookEndpoint:
        """Get a merchant's endpoint (without secret).

        Raises:
            NotFoundError: Unknown, deleted, or another merchant's endpoint.
        """
        endpoint = await self._storage.get_endpoint(endpoint_id, merchant_id)
        if endpoint is None:
            raise NotFoundError("webhook", endpoint_id)
        return endpoint

    async def update(
        self,
        endpoint_id: str,
        merchant_id: str,
        patch: EndpointPatch,
    ) -> WebhookEndpoint:
        """Change url, events, and/or status.

        Setting status to active (including reactivating a disabled
        endpoint) resets the consecutive failure counter.

        Raises:
            NotFoundError: Unknown, deleted, or another merchant's endpoint.
            InvalidUrlError / InvalidEventTypeError: Bad patch values.
        """
        values: dict[str, object] = {}
        if patch.url is not None:
            values["url"] = validate_url(patch.url, self._settings.allow_insecure_localhost)
        if patch.events is not None:
            values["events"] = validate_events(patch.events)
        if patch.status is not None:
            values["status"] = patch.status
            if patch.status == "active":
                values["consecutive_failures"] = 0

        if not values:
            return await self.get(endpoint_id, merchant_id)

        endpoint = await self._storage.update_endpoint(endpoint_id, merchant_id, **values)
        if endpoint is None:
            raise NotFoundError("webhook", endpoint_id)
        logger.info(
            "endpoint_updated",
            merchant_id=merchant_id,
            endpoint_id=endpoint_id,
            fields=sorted(values),
        )
        return endpoint

    async def delete(self, endpoint_id: str, merchant_id: str) -> None:
        """Delete an endpoint. Repeating the delete is a no-op success.

        Open delivery tasks are cancelled; delivery history is kept.

        Raises:
            NotFoundError: The endpoint never existed for this merchant.
        """
        now = utc_now()
        if not await self._storage.tombstone_endpoint(endpoint_id, merchant_id, now):
            raise NotFoundError("webhook", endpoint_id)
        cancelled = await self._storage.cancel_open_tasks(endpoint_id, now)
        logger.info(
            "endpoint_deleted",
            merchant_id=merchant_id,
            endpoint_id=endpoint_id,
            cancelled_tasks=cancelled,
        )

    async def record_outcome(self, endpoint_id: str, success: bool) -> bool:
        """Fold a pair outcome into the endpoint's failure counter.

        Internal: only the retry scheduler calls this.

        Returns:
            True if this outcome disabled the endpoint.
        """
        return await self._storage.record_endpoint_outcome(
            endpoint_id,
            success=success,
            failure_threshold=self._settings.failure_threshold,
        )
