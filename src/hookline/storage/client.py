"""Database storage client for Hookline.

This module provides the WebhookStorage class that combines all storage
operations through mixins.

Example:
    ```python
    from hookline.storage import WebhookStorage

    async with WebhookStorage("sqlite+aiosqlite:///hooks.db") as storage:
        await storage.insert_endpoint(endpoint)
        endpoints = await storage.list_endpoints("m_123")
    ```
"""

from __future__ import annotations

from .base import StorageBase
from .deliveries import DeliveryMixin
from .endpoints import EndpointMixin


class WebhookStorage(EndpointMixin, DeliveryMixin, StorageBase):
    """Async SQLAlchemy storage for endpoints, events, tasks, and attempts.

    Works against PostgreSQL (asyncpg) in production and SQLite (aiosqlite)
    in development and tests. All state shared between workers lives here.
    """


__all__ = ["WebhookStorage"]
