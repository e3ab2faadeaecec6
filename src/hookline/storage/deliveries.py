"""Event, delivery task, and delivery attempt storage operations.

Task state transitions are conditional UPDATEs checked by rowcount, so
concurrent workers racing for the same row see exactly one winner.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from hookline.exceptions import StorageError
from hookline.models import OPEN_TASK_STATES, utc_now

from .retry import storage_retry
from .tables import AttemptRow, EventRow, TaskRow

if TYPE_CHECKING:
    from hookline.models import DeliveryAttempt, DeliveryTask, TaskState, WebhookEvent

TERMINAL_TASK_STATES = ("succeeded", "exhausted", "cancelled")


class DeliveryMixin:
    """Mixin providing event, task, and attempt operations for WebhookStorage.

    Expects from the base class:
    - _session() async context manager yielding an AsyncSession
    - _row_to_model(row, model_class, **overrides)
    """

    _session: Any
    _row_to_model: Any

    # Events

    async def save_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        """Persist an event, idempotent on (merchant_id, dedupe_key).

        Returns:
            (stored event, created). When the event already existed the
            stored copy is returned and created is False.
        """
        try:
            async with self._session() as session:
                session.add(
                    EventRow(
                        id=event.id,
                        merchant_id=event.merchant_id,
                        event_type=event.event_type,
                        payload=event.payload,
                        occurred_at=event.occurred_at,
                        dedupe_key=event.dedupe_key,
                    )
                )
            return event, True
        except IntegrityError:
            stored = await self.get_event(event.id)
            if stored is None:
                raise StorageError(f"Event {event.id} conflicted but could not be loaded") from None
            return stored, False

    @storage_retry
    async def get_event(self, event_id: str) -> WebhookEvent | None:
        from hookline.models import WebhookEvent

        async with self._session() as session:
            row = await session.get(EventRow, event_id)
            if row is None:
                return None
            event: WebhookEvent = self._row_to_model(row, WebhookEvent)
            return event

    # Tasks

    def _task(self, row: TaskRow) -> DeliveryTask:
        from hookline.models import DeliveryTask

        task: DeliveryTask = self._row_to_model(row, DeliveryTask)
        return task

    async def create_task(self, task: DeliveryTask) -> bool:
        """Insert the task for a pair.

        Returns:
            False if the pair already has a task (in any state).
        """
        try:
            async with self._session() as session:
                session.add(
                    TaskRow(
                        id=task.id,
                        endpoint_id=task.endpoint_id,
                        event_id=task.event_id,
                        merchant_id=task.merchant_id,
                        state=task.state,
                        attempt_number=task.attempt_number,
                        next_attempt_at=task.next_attempt_at,
                        claimed_by=task.claimed_by,
                        claimed_at=task.claimed_at,
                        created_at=task.created_at,
                        updated_at=task.updated_at,
                    )
                )
            return True
        except IntegrityError:
            return False

    @storage_retry
    async def get_task(self, task_id: str) -> DeliveryTask | None:
        async with self._session() as session:
            row = await session.get(TaskRow, task_id)
            return self._task(row) if row is not None else None

    @storage_retry
    async def get_task_for_pair(self, endpoint_id: str, event_id: str) -> DeliveryTask | None:
        stmt = select(TaskRow).where(TaskRow.endpoint_id == endpoint_id, TaskRow.event_id == event_id)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._task(row) if row is not None else None

    @storage_retry
    async def find_due_tasks(self, now: datetime, limit: int) -> list[DeliveryTask]:
        """Scheduled tasks whose next attempt time has passed, oldest first."""
        stmt = (
            select(TaskRow)
            .where(TaskRow.state == "scheduled", TaskRow.next_attempt_at <= now)
            .order_by(TaskRow.next_attempt_at.asc(), TaskRow.id.asc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._task(row) for row in rows]

    @storage_retry
    async def find_stale_tasks(self, cutoff: datetime, limit: int) -> list[DeliveryTask]:
        """In-flight tasks claimed before the cutoff (worker presumed dead)."""
        stmt = (
            select(TaskRow)
            .where(TaskRow.state == "in_flight", TaskRow.claimed_at < cutoff)
            .order_by(TaskRow.claimed_at.asc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._task(row) for row in rows]

    async def _conditional_task_update(self, task_id: str, *criteria: Any, **values: Any) -> DeliveryTask | None:
        values.setdefault("updated_at", utc_now())
        stmt = (
            update(TaskRow)
            .where(TaskRow.id == task_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if not result.rowcount:
                return None
            row = await session.get(TaskRow, task_id, populate_existing=True)
            return self._task(row)

    @storage_retry
    async def claim_task(self, task_id: str, worker_id: str, now: datetime) -> DeliveryTask | None:
        """Move a due task from scheduled to in_flight for this worker.

        Returns:
            The claimed task, or None if another worker won the race or the
            task is no longer due.
        """
        return await self._conditional_task_update(
            task_id,
            TaskRow.state == "scheduled",
            TaskRow.next_attempt_at <= now,
            state="in_flight",
            claimed_by=worker_id,
            claimed_at=now,
            updated_at=now,
        )

    @storage_retry
    async def reclaim_stale_task(
        self,
        task_id: str,
        worker_id: str,
        cutoff: datetime,
        now: datetime,
    ) -> DeliveryTask | None:
        """Take over an in-flight task whose claim is older than the cutoff."""
        return await self._conditional_task_update(
            task_id,
            TaskRow.state == "in_flight",
            TaskRow.claimed_at < cutoff,
            claimed_by=worker_id,
            claimed_at=now,
            updated_at=now,
        )

    @storage_retry
    async def finish_task(self, task_id: str, worker_id: str, state: TaskState) -> bool:
        """Move this worker's in-flight task to a final state.

        Returns:
            False if the task is no longer held by this worker.
        """
        task = await self._conditional_task_update(
            task_id,
            TaskRow.state == "in_flight",
            TaskRow.claimed_by == worker_id,
            state=state,
            claimed_at=None,
        )
        return task is not None

    @storage_retry
    async def reschedule_task(
        self,
        task_id: str,
        worker_id: str,
        attempt_number: int,
        next_attempt_at: datetime,
        failed_attempt_id: str | None = None,
    ) -> bool:
        """Return this worker's in-flight task to scheduled.

        When failed_attempt_id is given, the attempt's next_retry_at is set
        in the same transaction.

        Returns:
            False if the task is no longer held by this worker.
        """
        now = utc_now()
        async with self._session() as session:
            result = await session.execute(
                update(TaskRow)
                .where(
                    TaskRow.id == task_id,
                    TaskRow.state == "in_flight",
                    TaskRow.claimed_by == worker_id,
                )
                .values(
                    state="scheduled",
                    attempt_number=attempt_number,
                    next_attempt_at=next_attempt_at,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                return False
            if failed_attempt_id is not None:
                await session.execute(
                    update(AttemptRow)
                    .where(AttemptRow.id == failed_attempt_id)
                    .values(next_retry_at=next_attempt_at)
                    .execution_options(synchronize_session=False)
                )
            return True

    @storage_retry
    async def cancel_open_tasks(self, endpoint_id: str, now: datetime | None = None) -> int:
        """Cancel scheduled and in-flight tasks of an endpoint."""
        stmt = (
            update(TaskRow)
            .where(TaskRow.endpoint_id == endpoint_id, TaskRow.state.in_(OPEN_TASK_STATES))
            .values(state="cancelled", claimed_at=None, updated_at=now or utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

    # Attempts

    def _attempt(self, row: AttemptRow) -> DeliveryAttempt:
        from hookline.models import DeliveryAttempt

        attempt: DeliveryAttempt = self._row_to_model(row, DeliveryAttempt)
        return attempt

    async def insert_attempt(self, attempt: DeliveryAttempt) -> str:
        """Store a new attempt row.

        Raises:
            StorageError: If the attempt number already exists for the pair.
        """
        try:
            async with self._session() as session:
                session.add(AttemptRow(**attempt.model_dump()))
        except IntegrityError as e:
            raise StorageError(
                f"Attempt {attempt.attempt_number} already recorded for "
                f"{attempt.endpoint_id}/{attempt.event_id}"
            ) from e
        return attempt.id

    @storage_retry
    async def update_attempt(self, attempt: DeliveryAttempt) -> bool:
        """Record the result of a pending attempt.

        Returns:
            False if the row was no longer pending, e.g. the sweeper already
            marked it abandoned. Nothing is written in that case.
        """
        stmt = (
            update(AttemptRow)
            .where(AttemptRow.id == attempt.id, AttemptRow.outcome == "pending")
            .values(
                completed_at=attempt.completed_at,
                http_status=attempt.http_status,
                response_body_snippet=attempt.response_body_snippet,
                error=attempt.error,
                outcome=attempt.outcome,
                next_retry_at=attempt.next_retry_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    @storage_retry
    async def get_attempt(
        self, endpoint_id: str, event_id: str, attempt_number: int
    ) -> DeliveryAttempt | None:
        stmt = select(AttemptRow).where(
            AttemptRow.endpoint_id == endpoint_id,
            AttemptRow.event_id == event_id,
            AttemptRow.attempt_number == attempt_number,
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._attempt(row) if row is not None else None

    @storage_retry
    async def list_pair_attempts(self, endpoint_id: str, event_id: str) -> list[DeliveryAttempt]:
        """All attempts of a pair in attempt order."""
        stmt = (
            select(AttemptRow)
            .where(AttemptRow.endpoint_id == endpoint_id, AttemptRow.event_id == event_id)
            .order_by(AttemptRow.attempt_number.asc())
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._attempt(row) for row in rows]

    @storage_retry
    async def list_attempts(
        self,
        endpoint_id: str,
        limit: int,
        before: tuple[datetime, str] | None = None,
    ) -> list[DeliveryAttempt]:
        """Attempts of an endpoint, newest first, keyset-paginated.

        Args:
            endpoint_id: Endpoint to list.
            limit: Maximum rows to return.
            before: (requested_at, id) of the last row of the previous page.
        """
        stmt = select(AttemptRow).where(AttemptRow.endpoint_id == endpoint_id)
        if before is not None:
            ts, last_id = before
            stmt = stmt.where(
                or_(
                    AttemptRow.requested_at < ts,
                    and_(AttemptRow.requested_at == ts, AttemptRow.id < last_id),
                )
            )
        stmt = stmt.order_by(AttemptRow.requested_at.desc(), AttemptRow.id.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._attempt(row) for row in rows]

    @storage_retry
    async def attempt_stats(self, endpoint_id: str) -> dict[str, Any]:
        """Counts per outcome and average attempt number for an endpoint."""
        stmt = (
            select(
                AttemptRow.outcome,
                func.count(AttemptRow.id),
                func.sum(AttemptRow.attempt_number),
            )
            .where(AttemptRow.endpoint_id == endpoint_id)
            .group_by(AttemptRow.outcome)
        )
        counts = {"success": 0, "failed": 0, "pending": 0}
        total = 0
        attempt_sum = 0
        async with self._session() as session:
            for outcome, count, number_sum in (await session.execute(stmt)).all():
                counts[outcome] = int(count)
                total += int(count)
                attempt_sum += int(number_sum or 0)
        return {
            "total": total,
            "succeeded": counts["success"],
            "failed": counts["failed"],
            "pending": counts["pending"],
            "average_attempt_number": round(attempt_sum / total, 2) if total else 0.0,
        }

    async def delete_history_before(self, cutoff: datetime) -> int:
        """Remove attempts, finished tasks, and unreferenced events older than cutoff.

        Returns:
            Number of attempt rows removed.
        """
        async with self._session() as session:
            attempts = await session.execute(
                delete(AttemptRow)
                .where(AttemptRow.requested_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(TaskRow)
                .where(TaskRow.state.in_(TERMINAL_TASK_STATES), TaskRow.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(EventRow)
                .where(
                    EventRow.occurred_at < cutoff,
                    ~exists().where(TaskRow.event_id == EventRow.id),
                    ~exists().where(AttemptRow.event_id == EventRow.id),
                )
                .execution_options(synchronize_session=False)
            )
            return int(attempts.rowcount or 0)
