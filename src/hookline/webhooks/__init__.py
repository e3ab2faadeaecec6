"""Webhook delivery engine.

Provides HMAC-signed delivery, the endpoint registry, and the persisted
retry scheduler.

Example:
    ```python
    from hookline.webhooks import EndpointRegistry, RetryScheduler, WebhookDispatcher

    registry = EndpointRegistry(storage, settings)
    scheduler = RetryScheduler(storage, registry, settings)
    dispatcher = WebhookDispatcher(storage, scheduler, settings)

    await dispatcher.dispatch(event)
    await scheduler.sweep(dispatcher)
    ```
"""

from .dispatcher import WebhookDispatcher, default_worker_id
from .registry import EndpointRegistry, generate_secret, validate_events, validate_url
from .scheduler import RetryScheduler, SweepResult, compute_backoff
from .signing import Envelope, build_envelope, canonical_body, compute_signature, verify_signature

__all__ = [
    "EndpointRegistry",
    "Envelope",
    "RetryScheduler",
    "SweepResult",
    "WebhookDispatcher",
    "build_envelope",
    "canonical_body",
    "compute_backoff",
    "compute_signature",
    "default_worker_id",
    "generate_secret",
    "validate_events",
    "validate_url",
    "verify_signature",
]
