"""Hookline: reliable webhook delivery for merchant integrations.

Registers merchant webhook endpoints, signs and delivers event payloads,
retries failed deliveries with exponential backoff, keeps an auditable
delivery history, and disables endpoints that keep failing.

Quick Start:
    from hookline.models import WebhookEvent
    from hookline.service import WebhookService

    async with WebhookService.create() as hooks:
        endpoint, secret = await hooks.create_endpoint(
            merchant_id="m_123",
            url="https://example.com/hooks",
            events=["document.created"],
        )
        await hooks.dispatch(
            WebhookEvent(
                event_type="document.created",
                merchant_id="m_123",
                payload={"document_id": "doc_1"},
            )
        )

Run the retry sweeper as a separate process:
    python -m hookline.worker
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
