"""Webhook delivery: fan-out, signed HTTP POSTs, and attempt recording.

The dispatcher is the only writer of delivery attempt rows. A pending
row is committed before every HTTP call and updated afterwards, so a
crash mid-request leaves evidence the sweeper can reclaim. No database
transaction is open while a request is in flight.
"""

from __future__ import annotations

import asyncio
import os
import socket
from typing import TYPE_CHECKING
from uuid import uuid4

import httpx

from hookline.exceptions import DeliveryError, StorageError, ValidationError
from hookline.logging import get_logger
from hookline.models import (
    TEST_EVENT_TYPE,
    DeliveryAttempt,
    DeliveryTask,
    TestDeliveryResult,
    WebhookEvent,
    utc_now,
)

from .signing import build_envelope

if TYPE_CHECKING:
    from hookline.config import Settings
    from hookline.models import WebhookEndpoint
    from hookline.storage import WebhookStorage

    from .scheduler import RetryScheduler

logger = get_logger(__name__)


def default_worker_id() -> str:
    """Identifier for claims made by this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class WebhookDispatcher:
    """Dispatches events to subscribed endpoints.

    Handles:
    - Persisting the event and resolving subscribed, active endpoints
    - Creating one delivery task per (endpoint, event) pair
    - Signing and POSTing the envelope with a bounded timeout
    - Recording every attempt and handing outcomes to the RetryScheduler

    Example:
        ```python
        dispatcher = WebhookDispatcher(storage, scheduler, settings)

        attempts = await dispatcher.dispatch(event)
        result = await dispatcher.test(endpoint)
        ```
    """

    def __init__(
        self,
        storage: WebhookStorage,
        scheduler: RetryScheduler,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        worker_id: str | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Storage for events, tasks, and attempts.
            scheduler: Receives every attempt outcome.
            settings: Timeouts, concurrency, and snippet size.
            transport: Custom httpx transport (tests use httpx.MockTransport).
            worker_id: Identity used when claiming tasks. Generated if omitted.
        """
        self._storage = storage
        self._scheduler = scheduler
        self._timeout = settings.http_timeout_seconds
        self._snippet_chars = settings.response_snippet_chars
        self._transport = transport
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_deliveries)
        self.worker_id = worker_id or default_worker_id()

    @property
    def slot(self) -> asyncio.Semaphore:
        """Semaphore bounding concurrent outbound requests."""
        return self._semaphore

    async def dispatch(self, event: WebhookEvent) -> list[DeliveryAttempt]:
        """Deliver an event to every active endpoint subscribed to its type.

        Idempotent on (merchant_id, dedupe_key): pairs that already have a
        task are skipped, whatever state that task is in.

        Returns:
            First attempts made by this call (empty if nothing matched).
        """
        if event.event_type == TEST_EVENT_TYPE:
            raise ValidationError("event_type", f"{TEST_EVENT_TYPE} events cannot be dispatched")

        stored, created = await self._storage.save_event(event)
        endpoints = await self._storage.get_endpoints_for_event(
            stored.merchant_id, stored.event_type
        )
        if not endpoints:
            logger.debug(
                "no_subscribed_endpoints",
                merchant_id=stored.merchant_id,
                event_type=stored.event_type,
            )
            return []

        results = await asyncio.gather(
            *(self._start_pair(endpoint, stored) for endpoint in endpoints),
            return_exceptions=True,
        )

        attempts: list[DeliveryAttempt] = []
        for endpoint, result in zip(endpoints, results):
            if isinstance(result, BaseException):
                logger.error(
                    "dispatch_failed",
                    endpoint_id=endpoint.id,
                    event_id=stored.id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
            elif result is not None:
                attempts.append(result)

        logger.info(
            "event_dispatched",
            merchant_id=stored.merchant_id,
            event_id=stored.id,
            event_type=stored.event_type,
            duplicate=not created,
            endpoints=len(endpoints),
            attempts=len(attempts),
        )
        return attempts

    async def _start_pair(
        self, endpoint: WebhookEndpoint, event: WebhookEvent
    ) -> DeliveryAttempt | None:
        async with self._semaphore:
            now = utc_now()
            task = DeliveryTask(
                endpoint_id=endpoint.id,
                event_id=event.id,
                merchant_id=event.merchant_id,
                state="in_flight",
                attempt_number=1,
                next_attempt_at=now,
                claimed_by=self.worker_id,
                claimed_at=now,
                created_at=now,
                updated_at=now,
            )
            if not await self._storage.create_task(task):
                logger.debug("pair_already_dispatched", endpoint_id=endpoint.id, event_id=event.id)
                return None
            return await self.deliver(task)

    async def deliver(self, task: DeliveryTask) -> DeliveryAttempt | None:
        """Make the task's current attempt. The caller must hold the claim.

        Re-checks the endpoint right before the request: a deleted or
        disabled endpoint cancels the task instead.

        Returns:
            The recorded attempt, or None if the task was cancelled.

        Raises:
            StorageError: If the attempt cannot be recorded; the task stays
                in_flight and is reclaimed by a later sweep.
        """
        log = logger.bind(
            endpoint_id=task.endpoint_id,
            event_id=task.event_id,
            attempt=task.attempt_number,
        )

        endpoint = await self._storage.get_endpoint(task.endpoint_id, with_secret=True)
        if endpoint is None or not endpoint.is_active:
            await self._storage.finish_task(task.id, self.worker_id, "cancelled")
            log.info(
                "delivery_cancelled",
                reason="endpoint_deleted" if endpoint is None else "endpoint_disabled",
            )
            return None

        event = await self._storage.get_event(task.event_id)
        if event is None:
            raise StorageError(f"Event {task.event_id} missing for task {task.id}")

        attempt = DeliveryAttempt(
            endpoint_id=endpoint.id,
            event_id=event.id,
            event_type=event.event_type,
            attempt_number=task.attempt_number,
        )
        await self._storage.insert_attempt(attempt)

        await self._send(endpoint, event, attempt)
        if not await self._storage.update_attempt(attempt):
            # Reclaimed as abandoned while the request was running
            log.warning("delivery_result_discarded", outcome=attempt.outcome)
            return attempt

        if attempt.outcome == "success":
            await self._scheduler.on_success(task, attempt)
        else:
            await self._scheduler.on_failure(task, attempt)
        return attempt

    async def test(self, endpoint: WebhookEndpoint) -> TestDeliveryResult:
        """Send a synthetic webhook.test event once and report the result.

        Records exactly one attempt. No task, no retry, and no effect on
        the endpoint's failure counter. Works on disabled endpoints so
        merchants can check a fix before reactivating.
        """
        event = WebhookEvent.for_test(endpoint.merchant_id, endpoint.id)
        await self._storage.save_event(event)

        attempt = DeliveryAttempt(
            endpoint_id=endpoint.id,
            event_id=event.id,
            event_type=event.event_type,
            attempt_number=1,
        )
        await self._storage.insert_attempt(attempt)

        async with self._semaphore:
            await self._send(endpoint, event, attempt)
        await self._storage.update_attempt(attempt)

        success = attempt.outcome == "success"
        logger.info(
            "test_delivery",
            endpoint_id=endpoint.id,
            success=success,
            http_status=attempt.http_status,
        )
        return TestDeliveryResult(
            success=success,
            message=(
                "Test webhook delivered successfully"
                if success
                else f"Test webhook failed: {attempt.error}"
            ),
            http_status=attempt.http_status,
            attempt_id=attempt.id,
        )

    async def _send(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
        attempt: DeliveryAttempt,
    ) -> None:
        """POST the envelope and mark the attempt with the outcome."""
        envelope = build_envelope(
            event,
            endpoint,
            delivery_id=attempt.id,
            attempt_number=attempt.attempt_number,
        )
        try:
            response = await self._post(endpoint.url, envelope.body, envelope.headers)
            attempt.mark_success(
                http_status=response.status_code,
                response_body=response.text,
                snippet_chars=self._snippet_chars,
            )
        except DeliveryError as e:
            attempt.mark_failed(
                error=e.message,
                http_status=e.http_status,
                response_body=e.response_body,
                snippet_chars=self._snippet_chars,
            )
        except Exception as e:
            logger.exception("delivery_unexpected_error", endpoint_id=endpoint.id, error=str(e))
            attempt.mark_failed(error=f"Unexpected error: {e}")

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        """POST once; any non-2xx response or transport failure is a DeliveryError.

        httpx bounds each read separately; the deadline bounds the whole
        exchange so a trickling receiver cannot outlive the stale window.
        """
        try:
            async with (
                asyncio.timeout(self._timeout),
                httpx.AsyncClient(
                    timeout=self._timeout,
                    transport=self._transport,
                    follow_redirects=False,
                ) as client,
            ):
                response = await client.post(url, content=body, headers=headers)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise DeliveryError(f"Request timed out after {self._timeout:g}s") from e
        except httpx.RequestError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryError(
                f"HTTP {response.status_code}",
                http_status=response.status_code,
                response_body=response.text,
            )
        return response
