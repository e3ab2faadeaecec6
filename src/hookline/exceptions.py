"""Hookline exception hierarchy.

Client-facing errors (validation, not found, authentication) map to 4xx
responses in the API. DeliveryError never reaches callers: it is recorded
on the attempt row and drives retries. StorageError aborts the current
operation only.
"""

from __future__ import annotations


class HooklineError(Exception):
    """Base exception for all Hookline errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "hookline_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def _details(self) -> dict[str, object]:
        """Extra fields included in the API error body."""
        return {}

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {"error": {"code": self.code, **self._details(), "message": self.message}}


class ValidationError(HooklineError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def _details(self) -> dict[str, object]:
        return {"field": self.field}


class InvalidUrlError(ValidationError):
    """Endpoint URL is not an acceptable HTTPS URL."""

    code: str = "invalid_url"

    def __init__(self, message: str) -> None:
        super().__init__("url", message)


class InvalidEventTypeError(ValidationError):
    """Event subscription list is empty or names an unknown event type."""

    code: str = "invalid_event_type"

    def __init__(self, message: str) -> None:
        super().__init__("events", message)


class NotFoundError(HooklineError):
    """Resource not found, or owned by another merchant.

    The two cases are indistinguishable to callers so ids outside the
    caller's tenant cannot be probed.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def _details(self) -> dict[str, object]:
        return {"resource_type": self.resource_type, "resource_id": self.resource_id}


class DeliveryError(HooklineError):
    """A single delivery attempt failed.

    Attributes:
        http_status: Response status if the endpoint answered.
        response_body: Response body if any.
    """

    code: str = "delivery_error"

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.http_status = http_status
        self.response_body = response_body
        super().__init__(message)


class StorageError(HooklineError):
    """Database operation failed."""

    code: str = "storage_error"


class TransientStorageError(StorageError):
    """Storage failure likely to succeed on retry (lost connection, lock timeout)."""

    code: str = "storage_unavailable"


class ConfigurationError(HooklineError):
    code: str = "configuration_error"


class AuthenticationError(HooklineError):
    """Missing, malformed, forged, or expired merchant credentials."""

    code: str = "authentication_error"
