"""Tests for WebhookDispatcher: fan-out, signing, and attempt recording."""

import json

import httpx
import pytest
from helpers import later

from hookline.exceptions import ValidationError
from hookline.models import WebhookEvent
from hookline.webhooks import default_worker_id, verify_signature
from hookline.webhooks.signing import (
    ATTEMPT_HEADER,
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
)

URL = "https://merchant.example/hook"


def _order_created(merchant_id: str = "m_1", order_id: str = "o_1") -> WebhookEvent:
    return WebhookEvent(
        event_type="order.created",
        merchant_id=merchant_id,
        payload={"order_id": order_id},
        dedupe_key=f"order:{order_id}",
    )


def test_default_worker_id_unique():
    assert default_worker_id() != default_worker_id()


class TestDispatch:
    """Tests for WebhookDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_no_subscribers(self, service, receiver):
        await service.create_endpoint("m_1", URL, ["order.updated"])
        assert await service.dispatcher.dispatch(_order_created()) == []
        assert receiver.calls == 0

    @pytest.mark.asyncio
    async def test_successful_delivery(self, service, receiver):
        endpoint, secret = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()

        attempts = await service.dispatcher.dispatch(event)

        assert len(attempts) == 1
        attempt = attempts[0]
        assert attempt.outcome == "success"
        assert attempt.attempt_number == 1
        assert attempt.http_status == 200
        assert attempt.response_body_snippet == "ok"

        task = await service.storage.get_task_for_pair(endpoint.id, event.id)
        assert task.state == "succeeded"
        stored = await service.storage.get_attempt(endpoint.id, event.id, 1)
        assert stored.outcome == "success"

    @pytest.mark.asyncio
    async def test_request_is_signed(self, service, receiver):
        endpoint, secret = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()
        attempts = await service.dispatcher.dispatch(event)

        request = receiver.requests[0]
        assert request.method == "POST"
        assert str(request.url) == URL
        assert request.headers[EVENT_HEADER] == "order.created"
        assert request.headers[ATTEMPT_HEADER] == "1"
        assert request.headers[DELIVERY_ID_HEADER] == attempts[0].id
        assert verify_signature(
            request.content,
            secret,
            request.headers[TIMESTAMP_HEADER],
            request.headers[SIGNATURE_HEADER],
        )
        body = json.loads(request.content)
        assert body["id"] == event.id
        assert body["type"] == "order.created"
        assert body["data"] == {"order_id": "o_1"}

    @pytest.mark.asyncio
    async def test_fan_out_to_every_subscriber(self, service, receiver):
        await service.create_endpoint("m_1", "https://a.example/hook", ["order.created"])
        await service.create_endpoint("m_1", "https://b.example/hook", ["order.created", "order.updated"])
        await service.create_endpoint("m_2", "https://c.example/hook", ["order.created"])

        attempts = await service.dispatcher.dispatch(_order_created())

        assert len(attempts) == 2
        assert sorted(str(r.url) for r in receiver.requests) == [
            "https://a.example/hook",
            "https://b.example/hook",
        ]

    @pytest.mark.asyncio
    async def test_duplicate_event_delivered_once(self, service, receiver):
        """Same (merchant, dedupe key) twice yields one delivery per endpoint."""
        await service.create_endpoint("m_1", URL, ["order.created"])

        first = await service.dispatcher.dispatch(_order_created())
        second = await service.dispatcher.dispatch(_order_created())

        assert len(first) == 1
        assert second == []
        assert receiver.calls == 1

    @pytest.mark.asyncio
    async def test_disabled_endpoint_skipped(self, service, receiver):
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        await service.storage.update_endpoint(endpoint.id, "m_1", status="disabled")

        assert await service.dispatcher.dispatch(_order_created()) == []
        assert receiver.calls == 0

    @pytest.mark.asyncio
    async def test_test_event_cannot_be_dispatched(self, service):
        with pytest.raises(ValidationError):
            await service.dispatcher.dispatch(WebhookEvent.for_test("m_1", "whk_1"))


class TestFailureClassification:
    """Every non-2xx response and transport failure is a failed attempt."""

    @pytest.mark.asyncio
    async def test_server_error_schedules_retry(self, service, receiver):
        receiver.respond_with(httpx.Response(500, text="internal error"))
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()

        [attempt] = await service.dispatcher.dispatch(event)

        assert attempt.outcome == "failed"
        assert attempt.http_status == 500
        assert attempt.error == "HTTP 500"
        assert attempt.response_body_snippet == "internal error"
        assert attempt.next_retry_at is not None

        task = await service.storage.get_task_for_pair(endpoint.id, event.id)
        assert task.state == "scheduled"
        assert task.attempt_number == 2
        stored = await service.storage.get_attempt(endpoint.id, event.id, 1)
        assert stored.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_client_error_is_also_retried(self, service, receiver):
        receiver.respond_with(404)
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()
        await service.dispatcher.dispatch(event)

        assert (await service.storage.get_task_for_pair(endpoint.id, event.id)).state == "scheduled"

    @pytest.mark.asyncio
    async def test_redirect_not_followed(self, service, receiver):
        receiver.respond_with(httpx.Response(302, headers={"Location": "https://elsewhere.example"}))
        await service.create_endpoint("m_1", URL, ["order.created"])

        [attempt] = await service.dispatcher.dispatch(_order_created())

        assert attempt.outcome == "failed"
        assert attempt.http_status == 302
        assert receiver.calls == 1

    @pytest.mark.asyncio
    async def test_connection_error(self, service, receiver):
        receiver.respond_with(httpx.ConnectError("Connection refused"))
        await service.create_endpoint("m_1", URL, ["order.created"])

        [attempt] = await service.dispatcher.dispatch(_order_created())

        assert attempt.outcome == "failed"
        assert attempt.http_status is None
        assert attempt.error == "ConnectError: Connection refused"

    @pytest.mark.asyncio
    async def test_timeout(self, service, receiver):
        receiver.respond_with(httpx.ReadTimeout("read timed out"))
        await service.create_endpoint("m_1", URL, ["order.created"])

        [attempt] = await service.dispatcher.dispatch(_order_created())

        assert attempt.outcome == "failed"
        assert "timed out" in attempt.error

    @pytest.mark.asyncio
    async def test_response_body_truncated(self, service, receiver):
        receiver.respond_with(httpx.Response(503, text="x" * 5000))
        await service.create_endpoint("m_1", URL, ["order.created"])

        [attempt] = await service.dispatcher.dispatch(_order_created())

        assert len(attempt.response_body_snippet) == 1000


class TestDeliverGuards:
    """An attempt re-checks its endpoint right before the request."""

    @pytest.mark.asyncio
    async def test_disabled_before_retry_cancels(self, service, receiver):
        receiver.respond_with(500)
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()
        await service.dispatcher.dispatch(event)
        await service.storage.update_endpoint(endpoint.id, "m_1", status="disabled")

        result = await service.sweep(now=later())

        assert receiver.calls == 1
        assert result.claimed == 1
        assert result.delivered == 0
        assert (await service.storage.get_task_for_pair(endpoint.id, event.id)).state == "cancelled"

    @pytest.mark.asyncio
    async def test_deleted_endpoint_gets_no_retries(self, service, receiver):
        receiver.respond_with(500)
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        event = _order_created()
        await service.dispatcher.dispatch(event)

        await service.delete_endpoint(endpoint.id, "m_1")
        result = await service.sweep(now=later())

        assert result.claimed == 0
        assert receiver.calls == 1
        assert (await service.storage.get_task_for_pair(endpoint.id, event.id)).state == "cancelled"


class TestTestDelivery:
    """Tests for the synthetic test delivery."""

    @pytest.mark.asyncio
    async def test_success(self, service, receiver):
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])

        result = await service.test_endpoint(endpoint.id, "m_1")

        assert result.success is True
        assert result.message == "Test webhook delivered successfully"
        assert result.http_status == 200
        body = json.loads(receiver.requests[0].content)
        assert body["type"] == "webhook.test"
        assert body["data"] == {"message": "This is a test webhook delivery", "webhook_id": endpoint.id}

    @pytest.mark.asyncio
    async def test_failure_does_not_touch_counter_or_retry(self, service, receiver):
        receiver.respond_with(500)
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])

        result = await service.test_endpoint(endpoint.id, "m_1")

        assert result.success is False
        assert result.message == "Test webhook failed: HTTP 500"
        page = await service.list_deliveries(endpoint.id, "m_1")
        assert [a.id for a in page.items] == [result.attempt_id]
        assert page.items[0].event_type == "webhook.test"
        assert (await service.get_endpoint(endpoint.id, "m_1")).consecutive_failures == 0

        await service.sweep(now=later())
        assert receiver.calls == 1

    @pytest.mark.asyncio
    async def test_works_on_disabled_endpoint(self, service, receiver):
        endpoint, _ = await service.create_endpoint("m_1", URL, ["order.created"])
        await service.storage.update_endpoint(endpoint.id, "m_1", status="disabled")

        result = await service.test_endpoint(endpoint.id, "m_1")

        assert result.success is True
        assert (await service.get_endpoint(endpoint.id, "m_1")).status == "disabled"
