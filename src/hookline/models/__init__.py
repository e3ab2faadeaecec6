"""Hookline data models."""

from .base import generate_id, truncate, utc_now
from .webhook import (
    ALL_EVENT_TYPES,
    DEFAULT_SNIPPET_CHARS,
    OPEN_TASK_STATES,
    TEST_EVENT_TYPE,
    AnyEventType,
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryPage,
    DeliveryStats,
    DeliveryTask,
    EndpointPatch,
    EndpointStatus,
    EventType,
    TaskState,
    TestDeliveryResult,
    WebhookEndpoint,
    WebhookEvent,
    derive_event_id,
)

__all__ = [
    "ALL_EVENT_TYPES",
    "AnyEventType",
    "AttemptOutcome",
    "DEFAULT_SNIPPET_CHARS",
    "DeliveryAttempt",
    "DeliveryPage",
    "DeliveryStats",
    "DeliveryTask",
    "EndpointPatch",
    "EndpointStatus",
    "EventType",
    "OPEN_TASK_STATES",
    "TEST_EVENT_TYPE",
    "TaskState",
    "TestDeliveryResult",
    "WebhookEndpoint",
    "WebhookEvent",
    "derive_event_id",
    "generate_id",
    "truncate",
    "utc_now",
]
