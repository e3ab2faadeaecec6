"""Endpoint storage operations.

Every query is scoped by merchant_id where a merchant is given, and
tombstoned endpoints are invisible unless explicitly requested.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, select, update

from hookline.models import utc_now

from .retry import storage_retry
from .tables import EndpointRow

if TYPE_CHECKING:
    from hookline.models import EndpointStatus, WebhookEndpoint


class EndpointMixin:
    """Mixin providing endpoint operations for WebhookStorage.

    Expects from the base class:
    - _session() async context manager yielding an AsyncSession
    - _row_to_model(row, model_class, **overrides)
    """

    _session: Any
    _row_to_model: Any

    def _endpoint_from_row(self, row: EndpointRow, with_secret: bool) -> WebhookEndpoint:
        from hookline.models import WebhookEndpoint

        if with_secret:
            endpoint: WebhookEndpoint = self._row_to_model(row, WebhookEndpoint)
        else:
            endpoint = self._row_to_model(row, WebhookEndpoint, secret=None)
        return endpoint

    async def insert_endpoint(self, endpoint: WebhookEndpoint) -> str:
        """Store a new endpoint. The endpoint must carry its secret."""
        if endpoint.secret is None:
            raise ValueError("Endpoint secret is required on insert")
        async with self._session() as session:
            session.add(
                EndpointRow(
                    id=endpoint.id,
                    merchant_id=endpoint.merchant_id,
                    url=endpoint.url,
                    events=list(endpoint.events),
                    secret=endpoint.secret,
                    status=endpoint.status,
                    consecutive_failures=endpoint.consecutive_failures,
                    created_at=endpoint.created_at,
                    updated_at=endpoint.updated_at,
                )
            )
        return endpoint.id

    @storage_retry
    async def get_endpoint(
        self,
        endpoint_id: str,
        merchant_id: str | None = None,
        *,
        with_secret: bool = False,
        include_deleted: bool = False,
    ) -> WebhookEndpoint | None:
        """Get an endpoint by ID.

        Args:
            endpoint_id: ID of the endpoint.
            merchant_id: Owning merchant. None only for internal callers
                (dispatcher, scheduler) that already hold a trusted id.
            with_secret: Include the signing secret.
            include_deleted: Also return tombstoned endpoints.

        Returns:
            WebhookEndpoint or None if not found (or owned by another merchant).
        """
        stmt = select(EndpointRow).where(EndpointRow.id == endpoint_id)
        if merchant_id is not None:
            stmt = stmt.where(EndpointRow.merchant_id == merchant_id)
        if not include_deleted:
            stmt = stmt.where(EndpointRow.deleted_at.is_(None))

        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return self._endpoint_from_row(row, with_secret)

    @storage_retry
    async def list_endpoints(
        self,
        merchant_id: str,
        status: EndpointStatus | None = None,
    ) -> list[WebhookEndpoint]:
        """List a merchant's endpoints (without secrets), oldest first."""
        stmt = (
            select(EndpointRow)
            .where(EndpointRow.merchant_id == merchant_id, EndpointRow.deleted_at.is_(None))
            .order_by(EndpointRow.created_at.asc(), EndpointRow.id.asc())
        )
        if status is not None:
            stmt = stmt.where(EndpointRow.status == status)

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._endpoint_from_row(row, with_secret=False) for row in rows]

    async def get_endpoints_for_event(
        self,
        merchant_id: str,
        event_type: str,
    ) -> list[WebhookEndpoint]:
        """Active endpoints of a merchant subscribed to an event type."""
        endpoints = await self.list_endpoints(merchant_id, status="active")
        return [ep for ep in endpoints if ep.subscribes_to(event_type)]

    async def update_endpoint(
        self,
        endpoint_id: str,
        merchant_id: str,
        **values: Any,
    ) -> WebhookEndpoint | None:
        """Apply column updates to a live endpoint.

        Returns:
            Updated endpoint (without secret) or None if not found.
        """
        values["updated_at"] = utc_now()
        stmt = (
            update(EndpointRow)
            .where(
                EndpointRow.id == endpoint_id,
                EndpointRow.merchant_id == merchant_id,
                EndpointRow.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if not result.rowcount:
                return None
            row = await session.get(EndpointRow, endpoint_id, populate_existing=True)
            return self._endpoint_from_row(row, with_secret=False)

    @storage_retry
    async def tombstone_endpoint(
        self,
        endpoint_id: str,
        merchant_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Mark an endpoint deleted.

        Returns:
            True if the endpoint exists for this merchant (deleted now or
            earlier), False if it never existed for them.
        """
        now = now or utc_now()
        async with self._session() as session:
            owned = (
                await session.execute(
                    select(EndpointRow.id).where(
                        EndpointRow.id == endpoint_id,
                        EndpointRow.merchant_id == merchant_id,
                    )
                )
            ).scalar_one_or_none()
            if owned is None:
                return False
            await session.execute(
                update(EndpointRow)
                .where(EndpointRow.id == endpoint_id, EndpointRow.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return True

    async def record_endpoint_outcome(
        self,
        endpoint_id: str,
        success: bool,
        failure_threshold: int,
        now: datetime | None = None,
    ) -> bool:
        """Atomically fold a pair outcome into the endpoint's failure counter.

        Success resets the counter. Failure increments it and flips the
        endpoint to disabled when the threshold is reached, only while the
        endpoint is active, so failures on a disabled endpoint are no-ops.

        Returns:
            True if this call disabled the endpoint.
        """
        now = now or utc_now()
        async with self._session() as session:
            if success:
                await session.execute(
                    update(EndpointRow)
                    .where(EndpointRow.id == endpoint_id, EndpointRow.deleted_at.is_(None))
                    .values(consecutive_failures=0, last_success_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                return False

            incremented = EndpointRow.consecutive_failures + 1
            result = await session.execute(
                update(EndpointRow)
                .where(
                    EndpointRow.id == endpoint_id,
                    EndpointRow.status == "active",
                    EndpointRow.deleted_at.is_(None),
                )
                .values(
                    consecutive_failures=incremented,
                    last_failure_at=now,
                    updated_at=now,
                    status=case(
                        (incremented >= failure_threshold, "disabled"),
                        else_=EndpointRow.status,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                return False
            status = (
                await session.execute(select(EndpointRow.status).where(EndpointRow.id == endpoint_id))
            ).scalar_one()
            return bool(status == "disabled")
