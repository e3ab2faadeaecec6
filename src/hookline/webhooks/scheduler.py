"""Retry scheduling: backoff, exhaustion, and the claim-based sweep.

Retries are persisted state, not in-process timers. Each (endpoint, event)
pair has one task row; the sweep promotes due rows to in_flight with a
conditional UPDATE so concurrent sweepers never fire the same attempt
twice, and reclaims rows abandoned by crashed workers.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from hookline.exceptions import StorageError
from hookline.logging import get_logger
from hookline.models import utc_now

if TYPE_CHECKING:
    from hookline.config import Settings
    from hookline.models import DeliveryAttempt, DeliveryTask
    from hookline.storage import WebhookStorage

    from .dispatcher import WebhookDispatcher
    from .registry import EndpointRegistry

logger = get_logger(__name__)


def compute_backoff(
    attempt_number: int,
    base_delay: float,
    max_delay: float,
    jitter_ratio: float = 0.2,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before the given attempt.

    ``base * 2**(n-2)`` for attempt n >= 2, scaled by a random factor in
    ``[1 - jitter_ratio, 1 + jitter_ratio]``, then capped at max_delay.

    Args:
        attempt_number: The attempt about to be scheduled (2 for the first retry).
        base_delay: Delay before attempt 2.
        max_delay: Upper bound for any delay.
        jitter_ratio: Relative jitter (0.2 means +-20%).
        rng: Random source (injectable for tests).
    """
    if attempt_number < 2:
        return 0.0
    exponential = base_delay * (2 ** (attempt_number - 2))
    if jitter_ratio:
        exponential *= 1 + (rng or random).uniform(-jitter_ratio, jitter_ratio)
    return max(0.0, min(exponential, max_delay))


@dataclass
class SweepResult:
    """What one sweep did."""

    reclaimed: int = 0
    claimed: int = 0
    delivered: int = 0
    errors: int = 0


class RetryScheduler:
    """Owns every transition of a pair after its attempt completes.

    Example:
        ```python
        scheduler = RetryScheduler(storage, registry, settings)
        dispatcher = WebhookDispatcher(storage, scheduler, settings)

        # periodic work, e.g. in a worker process
        result = await scheduler.sweep(dispatcher)
        ```
    """

    def __init__(
        self,
        storage: WebhookStorage,
        registry: EndpointRegistry,
        settings: Settings,
        rng: random.Random | None = None,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._settings = settings
        self._rng = rng or random.Random()

    def backoff_for(self, attempt_number: int) -> float:
        return compute_backoff(
            attempt_number,
            base_delay=self._settings.retry_base_delay_seconds,
            max_delay=self._settings.retry_max_delay_seconds,
            jitter_ratio=self._settings.retry_jitter_ratio,
            rng=self._rng,
        )

    async def on_success(self, task: DeliveryTask, attempt: DeliveryAttempt) -> bool:
        """Close the pair and reset the endpoint's failure counter.

        Returns:
            False when another worker took over the task; the endpoint is
            then left alone.
        """
        if not await self._storage.finish_task(task.id, task.claimed_by or "", "succeeded"):
            logger.warning("task_claim_lost", task_id=task.id, outcome="success")
            return False
        await self._registry.record_outcome(task.endpoint_id, success=True)
        logger.info(
            "delivery_succeeded",
            endpoint_id=task.endpoint_id,
            event_id=task.event_id,
            attempt=attempt.attempt_number,
            http_status=attempt.http_status,
        )
        return True

    async def on_failure(self, task: DeliveryTask, attempt: DeliveryAttempt) -> str:
        """Schedule the next attempt, or exhaust the pair.

        Returns:
            "scheduled", "exhausted", or "lost" when another worker took
            over the task in the meantime.
        """
        worker_id = task.claimed_by or ""
        log = logger.bind(
            endpoint_id=task.endpoint_id,
            event_id=task.event_id,
            attempt=attempt.attempt_number,
        )

        if attempt.attempt_number < self._settings.max_attempts:
            next_number = attempt.attempt_number + 1
            next_at = utc_now() + timedelta(seconds=self.backoff_for(next_number))
            if not await self._storage.reschedule_task(
                task.id,
                worker_id,
                attempt_number=next_number,
                next_attempt_at=next_at,
                failed_attempt_id=attempt.id,
            ):
                log.warning("task_claim_lost", task_id=task.id, outcome="failed")
                return "lost"
            attempt.next_retry_at = next_at
            log.info(
                "delivery_retry_scheduled",
                error=attempt.error,
                http_status=attempt.http_status,
                next_attempt=next_number,
                next_attempt_at=next_at.isoformat(),
            )
            return "scheduled"

        if not await self._storage.finish_task(task.id, worker_id, "exhausted"):
            log.warning("task_claim_lost", task_id=task.id, outcome="failed")
            return "lost"
        log.warning("delivery_exhausted", error=attempt.error, http_status=attempt.http_status)
        if await self._registry.record_outcome(task.endpoint_id, success=False):
            log.warning(
                "endpoint_disabled",
                reason="consecutive_failures",
                threshold=self._settings.failure_threshold,
            )
        return "exhausted"

    async def _recover_stale(self, task: DeliveryTask, now: datetime) -> None:
        """Resolve a reclaimed task from whatever its last attempt row says."""
        attempt = await self._storage.get_attempt(
            task.endpoint_id, task.event_id, task.attempt_number
        )
        if attempt is None:
            # Crashed before writing the attempt row: run the same attempt again
            await self._storage.reschedule_task(
                task.id,
                task.claimed_by or "",
                attempt_number=task.attempt_number,
                next_attempt_at=now,
            )
            return
        if attempt.outcome == "pending":
            abandoned = attempt.model_copy()
            abandoned.mark_failed(
                "Delivery abandoned: no result recorded within "
                f"{self._settings.stale_after_seconds:g}s"
            )
            if await self._storage.update_attempt(abandoned):
                attempt = abandoned
            else:
                # The original worker recorded a result in the meantime
                attempt = await self._storage.get_attempt(
                    task.endpoint_id, task.event_id, task.attempt_number
                ) or abandoned
        if attempt.outcome == "success":
            await self.on_success(task, attempt)
            return
        await self.on_failure(task, attempt)

    async def sweep(self, dispatcher: WebhookDispatcher, now: datetime | None = None) -> SweepResult:
        """Run one sweep: reclaim stale in-flight tasks, then fire due ones.

        A StorageError on one task is logged and counted; the sweep moves on
        and the task is picked up again by a later sweep.

        Args:
            dispatcher: Delivers claimed tasks; its worker_id owns the claims.
            now: Override the current time (tests).
        """
        now = now or utc_now()
        result = SweepResult()
        worker_id = dispatcher.worker_id
        batch = self._settings.sweep_batch_size

        cutoff = now - timedelta(seconds=self._settings.stale_after_seconds)
        try:
            stale = await self._storage.find_stale_tasks(cutoff, batch)
        except StorageError as e:
            logger.error("sweep_query_failed", phase="reclaim", error=str(e))
            result.errors += 1
            stale = []

        for task in stale:
            try:
                reclaimed = await self._storage.reclaim_stale_task(task.id, worker_id, cutoff, now)
                if reclaimed is None:
                    continue
                result.reclaimed += 1
                logger.warning(
                    "stale_task_reclaimed",
                    task_id=task.id,
                    previous_worker=task.claimed_by,
                    attempt=task.attempt_number,
                )
                await self._recover_stale(reclaimed, now)
            except StorageError as e:
                logger.error("sweep_item_failed", phase="reclaim", task_id=task.id, error=str(e))
                result.errors += 1

        try:
            due = await self._storage.find_due_tasks(now, batch)
        except StorageError as e:
            logger.error("sweep_query_failed", phase="due", error=str(e))
            result.errors += 1
            return result

        async def claim_and_deliver(task: DeliveryTask) -> bool:
            async with dispatcher.slot:
                claimed = await self._storage.claim_task(task.id, worker_id, now)
                if claimed is None:
                    return False
                result.claimed += 1
                return await dispatcher.deliver(claimed) is not None

        outcomes = await asyncio.gather(
            *(claim_and_deliver(task) for task in due),
            return_exceptions=True,
        )
        for task, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "sweep_item_failed",
                    phase="deliver",
                    task_id=task.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                result.errors += 1
            elif outcome:
                result.delivered += 1

        if result.reclaimed or result.claimed or result.errors:
            logger.info(
                "sweep_completed",
                reclaimed=result.reclaimed,
                claimed=result.claimed,
                delivered=result.delivered,
                errors=result.errors,
            )
        return result

    async def run_forever(
        self,
        dispatcher: WebhookDispatcher,
        stop_event: asyncio.Event,
        interval: float | None = None,
    ) -> None:
        """Sweep periodically until stop_event is set."""
        interval = interval or self._settings.sweep_interval_seconds
        logger.info("sweeper_started", worker_id=dispatcher.worker_id, interval=interval)
        while not stop_event.is_set():
            await self.sweep(dispatcher)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("sweeper_stopped", worker_id=dispatcher.worker_id)
