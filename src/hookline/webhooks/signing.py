"""Envelope construction and HMAC-SHA256 signing.

Receivers verify a delivery by recomputing

    hex(HMAC_SHA256(secret, f"{X-Webhook-Timestamp}.{raw body}"))

and comparing it to X-Webhook-Signature, rejecting timestamps outside
their tolerance window to block replays.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import UTC
from typing import TYPE_CHECKING

from hookline import __version__

if TYPE_CHECKING:
    from hookline.models import WebhookEndpoint, WebhookEvent

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
EVENT_ID_HEADER = "X-Webhook-Id"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
ATTEMPT_HEADER = "X-Webhook-Attempt"
USER_AGENT = f"Hookline-Webhooks/{__version__}"

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class Envelope:
    """Signed request ready to POST: raw body bytes plus headers."""

    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


def canonical_body(event: WebhookEvent) -> bytes:
    """Serialize an event as canonical JSON bytes.

    Sorted keys, compact separators, UTF-8, so identical events always
    produce identical bytes.
    """
    created_at = event.occurred_at.astimezone(UTC).isoformat(timespec="milliseconds")
    document = {
        "id": event.id,
        "type": event.event_type,
        "createdAt": created_at.replace("+00:00", "Z"),
        "data": event.payload,
    }
    return json.dumps(
        document,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def compute_signature(body: bytes, secret: str, timestamp: int) -> str:
    """Compute the hex HMAC-SHA256 over ``f"{timestamp}.{body}"``."""
    signed = str(timestamp).encode("ascii") + b"." + body
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=signed,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(
    body: bytes,
    secret: str,
    timestamp: int | str,
    signature: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a delivery signature the way a receiver should.

    Args:
        body: Raw request body bytes.
        secret: Endpoint signing secret.
        timestamp: Value of the X-Webhook-Timestamp header.
        signature: Value of the X-Webhook-Signature header.
        tolerance_seconds: Maximum accepted clock skew / replay window.
        now: Current unix time (defaults to time.time()).

    Returns:
        True if the signature matches and the timestamp is fresh.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return False
    expected = compute_signature(body, secret, ts)
    return hmac.compare_digest(expected, signature)


def build_envelope(
    event: WebhookEvent,
    endpoint: WebhookEndpoint,
    timestamp: int | None = None,
    delivery_id: str | None = None,
    attempt_number: int | None = None,
) -> Envelope:
    """Build the signed envelope for delivering an event to an endpoint.

    Pure: identical inputs (including timestamp) yield byte-identical
    output.

    Args:
        event: Event to deliver.
        endpoint: Target endpoint; must carry its secret.
        timestamp: Unix seconds to sign with (defaults to now).
        delivery_id: Attempt id, sent as X-Webhook-Delivery-Id.
        attempt_number: Attempt number, sent as X-Webhook-Attempt.

    Raises:
        ValueError: If the endpoint has no secret loaded.
    """
    if endpoint.secret is None:
        raise ValueError(f"Endpoint {endpoint.id} has no secret loaded")

    ts = int(time.time()) if timestamp is None else int(timestamp)
    body = canonical_body(event)

    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        EVENT_HEADER: event.event_type,
        EVENT_ID_HEADER: event.id,
        TIMESTAMP_HEADER: str(ts),
        SIGNATURE_HEADER: compute_signature(body, endpoint.secret, ts),
    }
    if delivery_id is not None:
        headers[DELIVERY_ID_HEADER] = delivery_id
    if attempt_number is not None:
        headers[ATTEMPT_HEADER] = str(attempt_number)

    return Envelope(body=body, headers=headers)
