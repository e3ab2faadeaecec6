"""Storage layer for Hookline.

Persists endpoints, events, delivery tasks, and delivery attempts with
SQLAlchemy's async engine.

Example:
    ```python
    from hookline.storage import WebhookStorage

    async with WebhookStorage("sqlite+aiosqlite:///hooks.db") as storage:
        endpoints = await storage.list_endpoints("m_123")
    ```
"""

from .client import WebhookStorage
from .deliveries import TERMINAL_TASK_STATES
from .retry import storage_retry

__all__ = [
    "TERMINAL_TASK_STATES",
    "WebhookStorage",
    "storage_retry",
]
