"""Tests for WebhookStorage against a real SQLite database."""

from datetime import UTC, timedelta

import pytest

from hookline.exceptions import StorageError, TransientStorageError
from hookline.models import (
    DeliveryAttempt,
    DeliveryTask,
    WebhookEndpoint,
    WebhookEvent,
    utc_now,
)
from hookline.storage import WebhookStorage, storage_retry


def _endpoint(merchant_id: str = "m_1", **kwargs) -> WebhookEndpoint:
    return WebhookEndpoint(
        merchant_id=merchant_id,
        url=kwargs.pop("url", "https://merchant.example/hook"),
        events=kwargs.pop("events", ["order.created"]),
        secret="whsec_test",
        **kwargs,
    )


def _attempt(endpoint_id: str, event_id: str, n: int, **kwargs) -> DeliveryAttempt:
    return DeliveryAttempt(
        endpoint_id=endpoint_id,
        event_id=event_id,
        event_type="order.created",
        attempt_number=n,
        **kwargs,
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_requires_initialize(self, settings):
        store = WebhookStorage(settings.database_url)
        with pytest.raises(RuntimeError, match="not initialized"):
            await store.get_event("evt_1")

    @pytest.mark.asyncio
    async def test_context_manager(self, settings):
        async with WebhookStorage(settings.database_url) as store:
            assert store.dialect_name == "sqlite"
            assert await store.get_event("evt_missing") is None

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        async with WebhookStorage("sqlite+aiosqlite:///:memory:") as store:
            endpoint = _endpoint()
            await store.insert_endpoint(endpoint)
            assert (await store.get_endpoint(endpoint.id)).id == endpoint.id


class TestEndpoints:
    """Tests for endpoint persistence."""

    @pytest.mark.asyncio
    async def test_round_trip_keeps_utc(self, storage):
        endpoint = _endpoint()
        await storage.insert_endpoint(endpoint)

        stored = await storage.get_endpoint(endpoint.id, "m_1")
        assert stored.created_at.tzinfo is not None
        assert stored.created_at.utcoffset() == timedelta(0)
        assert abs(stored.created_at - endpoint.created_at) < timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_secret_only_on_request(self, storage):
        endpoint = _endpoint()
        await storage.insert_endpoint(endpoint)
        assert (await storage.get_endpoint(endpoint.id)).secret is None
        assert (await storage.get_endpoint(endpoint.id, with_secret=True)).secret == "whsec_test"

    @pytest.mark.asyncio
    async def test_insert_requires_secret(self, storage):
        with pytest.raises(ValueError):
            await storage.insert_endpoint(_endpoint().redacted())

    @pytest.mark.asyncio
    async def test_endpoints_for_event(self, storage):
        wanted = _endpoint(events=["order.created", "order.updated"])
        other_type = _endpoint(events=["order.updated"])
        disabled = _endpoint(status="disabled")
        other_merchant = _endpoint("m_2")
        for endpoint in (wanted, other_type, disabled, other_merchant):
            await storage.insert_endpoint(endpoint)

        matches = await storage.get_endpoints_for_event("m_1", "order.created")
        assert [e.id for e in matches] == [wanted.id]

    @pytest.mark.asyncio
    async def test_tombstoned_endpoint_hidden(self, storage):
        endpoint = _endpoint()
        await storage.insert_endpoint(endpoint)
        assert await storage.tombstone_endpoint(endpoint.id, "m_1")

        assert await storage.get_endpoint(endpoint.id, "m_1") is None
        assert await storage.get_endpoint(endpoint.id, "m_1", include_deleted=True) is not None
        assert await storage.update_endpoint(endpoint.id, "m_1", url="https://x.example") is None
        assert await storage.get_endpoints_for_event("m_1", "order.created") == []


class TestEvents:
    @pytest.mark.asyncio
    async def test_save_event_idempotent(self, storage):
        event = WebhookEvent(
            event_type="order.created", merchant_id="m_1", payload={"a": 1}, dedupe_key="k1"
        )
        duplicate = WebhookEvent(
            event_type="order.created", merchant_id="m_1", payload={"a": 2}, dedupe_key="k1"
        )

        stored, created = await storage.save_event(event)
        assert created
        stored_again, created_again = await storage.save_event(duplicate)
        assert not created_again
        assert stored_again.id == stored.id
        assert stored_again.payload == {"a": 1}


class TestTasks:
    """Tests for task claims and transitions."""

    @pytest.mark.asyncio
    async def test_one_task_per_pair(self, storage):
        assert await storage.create_task(
            DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1")
        )
        assert not await storage.create_task(
            DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1")
        )

    @pytest.mark.asyncio
    async def test_claim_has_single_winner(self, storage):
        now = utc_now()
        task = DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1", next_attempt_at=now)
        await storage.create_task(task)

        first = await storage.claim_task(task.id, "worker-a", now)
        second = await storage.claim_task(task.id, "worker-b", now)
        assert first is not None
        assert first.state == "in_flight"
        assert first.claimed_by == "worker-a"
        assert second is None

    @pytest.mark.asyncio
    async def test_claim_respects_due_time(self, storage):
        now = utc_now()
        task = DeliveryTask(
            endpoint_id="whk_1",
            event_id="evt_1",
            merchant_id="m_1",
            next_attempt_at=now + timedelta(minutes=5),
        )
        await storage.create_task(task)

        assert await storage.find_due_tasks(now, 10) == []
        assert await storage.claim_task(task.id, "worker-a", now) is None
        assert [t.id for t in await storage.find_due_tasks(now + timedelta(minutes=6), 10)] == [task.id]

    @pytest.mark.asyncio
    async def test_finish_requires_claim_holder(self, storage):
        now = utc_now()
        task = DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1", next_attempt_at=now)
        await storage.create_task(task)
        await storage.claim_task(task.id, "worker-a", now)

        assert not await storage.finish_task(task.id, "worker-b", "succeeded")
        assert await storage.finish_task(task.id, "worker-a", "succeeded")
        assert (await storage.get_task(task.id)).state == "succeeded"

    @pytest.mark.asyncio
    async def test_reschedule_sets_next_retry_on_attempt(self, storage):
        now = utc_now()
        task = DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1", next_attempt_at=now)
        await storage.create_task(task)
        await storage.claim_task(task.id, "worker-a", now)
        attempt = _attempt("whk_1", "evt_1", 1).mark_failed("HTTP 500", http_status=500)
        await storage.insert_attempt(attempt)

        next_at = now + timedelta(seconds=60)
        assert await storage.reschedule_task(
            task.id, "worker-a", attempt_number=2, next_attempt_at=next_at, failed_attempt_id=attempt.id
        )

        rescheduled = await storage.get_task(task.id)
        assert rescheduled.state == "scheduled"
        assert rescheduled.attempt_number == 2
        assert rescheduled.claimed_by is None
        stored_attempt = await storage.get_attempt("whk_1", "evt_1", 1)
        assert abs(stored_attempt.next_retry_at - next_at) < timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_stale_reclaim(self, storage):
        claimed_at = utc_now() - timedelta(minutes=10)
        task = DeliveryTask(
            endpoint_id="whk_1",
            event_id="evt_1",
            merchant_id="m_1",
            state="in_flight",
            claimed_by="dead-worker",
            claimed_at=claimed_at,
        )
        await storage.create_task(task)
        now = utc_now()
        cutoff = now - timedelta(seconds=20)

        assert [t.id for t in await storage.find_stale_tasks(cutoff, 10)] == [task.id]
        reclaimed = await storage.reclaim_stale_task(task.id, "worker-b", cutoff, now)
        assert reclaimed.claimed_by == "worker-b"
        # The fresh claim is no longer stale
        assert await storage.reclaim_stale_task(task.id, "worker-c", cutoff, now) is None

    @pytest.mark.asyncio
    async def test_cancel_open_tasks(self, storage):
        open_task = DeliveryTask(endpoint_id="whk_1", event_id="evt_1", merchant_id="m_1")
        done_task = DeliveryTask(
            endpoint_id="whk_1", event_id="evt_2", merchant_id="m_1", state="succeeded"
        )
        await storage.create_task(open_task)
        await storage.create_task(done_task)

        assert await storage.cancel_open_tasks("whk_1") == 1
        assert (await storage.get_task(open_task.id)).state == "cancelled"
        assert (await storage.get_task(done_task.id)).state == "succeeded"


class TestAttempts:
    """Tests for attempt history."""

    @pytest.mark.asyncio
    async def test_duplicate_attempt_number_rejected(self, storage):
        await storage.insert_attempt(_attempt("whk_1", "evt_1", 1))
        with pytest.raises(StorageError):
            await storage.insert_attempt(_attempt("whk_1", "evt_1", 1))

    @pytest.mark.asyncio
    async def test_update_attempt(self, storage):
        attempt = _attempt("whk_1", "evt_1", 1)
        await storage.insert_attempt(attempt)
        attempt.mark_success(204)
        assert await storage.update_attempt(attempt) is True

        stored = await storage.get_attempt("whk_1", "evt_1", 1)
        assert stored.outcome == "success"
        assert stored.http_status == 204
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_update_attempt_only_while_pending(self, storage):
        """A recorded outcome is never overwritten by a late result."""
        attempt = _attempt("whk_1", "evt_1", 1)
        await storage.insert_attempt(attempt)
        abandoned = attempt.model_copy()
        abandoned.mark_failed("Delivery abandoned")
        assert await storage.update_attempt(abandoned) is True

        attempt.mark_success(200)
        assert await storage.update_attempt(attempt) is False

        stored = await storage.get_attempt("whk_1", "evt_1", 1)
        assert stored.outcome == "failed"
        assert stored.error == "Delivery abandoned"

    @pytest.mark.asyncio
    async def test_keyset_pagination_newest_first(self, storage):
        base = utc_now()
        attempts = [
            _attempt("whk_1", f"evt_{i}", 1, requested_at=base + timedelta(seconds=i))
            for i in range(5)
        ]
        for attempt in attempts:
            await storage.insert_attempt(attempt)
        await storage.insert_attempt(_attempt("whk_other", "evt_0", 1))

        first_page = await storage.list_attempts("whk_1", limit=2)
        assert [a.event_id for a in first_page] == ["evt_4", "evt_3"]

        last = first_page[-1]
        second_page = await storage.list_attempts("whk_1", limit=2, before=(last.requested_at, last.id))
        assert [a.event_id for a in second_page] == ["evt_2", "evt_1"]

        last = second_page[-1]
        third_page = await storage.list_attempts("whk_1", limit=2, before=(last.requested_at, last.id))
        assert [a.event_id for a in third_page] == ["evt_0"]

    @pytest.mark.asyncio
    async def test_same_timestamp_ties_broken_by_id(self, storage):
        ts = utc_now()
        for event_id in ("evt_a", "evt_b", "evt_c"):
            await storage.insert_attempt(_attempt("whk_1", event_id, 1, requested_at=ts))

        seen: list[str] = []
        before = None
        while True:
            page = await storage.list_attempts("whk_1", limit=1, before=before)
            if not page:
                break
            seen.append(page[0].id)
            before = (page[0].requested_at, page[0].id)
        assert len(seen) == 3
        assert seen == sorted(seen, reverse=True)

    @pytest.mark.asyncio
    async def test_attempt_stats(self, storage):
        await storage.insert_attempt(_attempt("whk_1", "evt_1", 1).mark_failed("HTTP 500"))
        await storage.insert_attempt(_attempt("whk_1", "evt_1", 2).mark_success(200))
        await storage.insert_attempt(_attempt("whk_1", "evt_2", 1).mark_success(200))
        await storage.insert_attempt(_attempt("whk_1", "evt_3", 1))

        stats = await storage.attempt_stats("whk_1")
        assert stats == {
            "total": 4,
            "succeeded": 2,
            "failed": 1,
            "pending": 1,
            "average_attempt_number": 1.25,
        }
        assert (await storage.attempt_stats("whk_none"))["total"] == 0

    @pytest.mark.asyncio
    async def test_delete_history_before(self, storage):
        old = utc_now() - timedelta(days=40)
        await storage.insert_attempt(_attempt("whk_1", "evt_old", 1, requested_at=old))
        await storage.insert_attempt(_attempt("whk_1", "evt_new", 1))

        removed = await storage.delete_history_before(utc_now() - timedelta(days=30))
        assert removed == 1
        remaining = await storage.list_attempts("whk_1", limit=10)
        assert [a.event_id for a in remaining] == ["evt_new"]
        assert remaining[0].requested_at.tzinfo == UTC


class TestStorageRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        @storage_retry
        async def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise TransientStorageError("database is locked")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        calls = []

        @storage_retry
        async def broken() -> None:
            calls.append(1)
            raise StorageError("constraint")

        with pytest.raises(StorageError):
            await broken()
        assert len(calls) == 1
