"""
Notification Delivery Engine - Error Taxonomy.

Typed errors raised by the delivery engine. Callers of the event entry point
only ever see NotConfiguredError, NoTemplateError, ExhaustedRetriesError or
DeliveryDeferredError; provider failures surface wrapped inside
ExhaustedRetriesError.

Architecture Layer: Domain
Principles: Fail Fast, Explicit Error Propagation
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .entities import DeliveryAttempt


class ProviderErrorKind(str, Enum):
    """Classification of a single provider failure."""
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    AUTHENTICATION = "authentication"
    REJECTED = "rejected"
    INVALID_RECIPIENT = "invalid_recipient"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN = "unknown"


class NotificationEngineError(Exception):
    """Base exception for delivery engine errors."""
    error_code: str = "NOTIFICATION_ENGINE_ERROR"


class ConfigurationError(NotificationEngineError):
    """Raised when the engine is assembled from invalid parts."""
    error_code = "CONFIGURATION_ERROR"


class NotConfiguredError(NotificationEngineError):
    """No enabled trigger rule exists for an event."""
    error_code = "EVENT_NOT_CONFIGURED"

    def __init__(self, event_name: str, reason: str = "no trigger rule") -> None:
        self.event_name = event_name
        self.reason = reason
        super().__init__(f"Event {event_name!r} is not configured: {reason}")


class NoTemplateError(NotificationEngineError):
    """No active template exists for a template type."""
    error_code = "NO_TEMPLATE"

    def __init__(self, template_type: str) -> None:
        self.template_type = template_type
        super().__init__(f"No active template for type {template_type!r}")


class DuplicateTriggerError(NotificationEngineError):
    """A trigger rule for the event is already registered."""
    error_code = "DUPLICATE_TRIGGER"

    def __init__(self, event_name: str) -> None:
        self.event_name = event_name
        super().__init__(f"Trigger rule for event {event_name!r} already exists")


class RenderError(NotificationEngineError):
    """Describes a degraded render. Logged, never raised by rendering."""
    error_code = "RENDER_DEGRADED"

    def __init__(self, template_type: str, missing_variables: list[str]) -> None:
        self.template_type = template_type
        self.missing_variables = missing_variables
        super().__init__(
            f"Template {template_type!r} rendered without variables: {missing_variables}"
        )


class ProviderError(NotificationEngineError):
    """A single provider call failed."""
    error_code = "PROVIDER_ERROR"

    def __init__(self, provider: str, error_kind: ProviderErrorKind, message: str) -> None:
        self.provider = provider
        self.error_kind = error_kind
        self.message = message
        super().__init__(f"[{provider}] {error_kind.value}: {message}")


class ExhaustedRetriesError(NotificationEngineError):
    """Every repetition of a delivery failed."""
    error_code = "RETRIES_EXHAUSTED"

    def __init__(
        self,
        record_id: str,
        attempts: list[DeliveryAttempt],
        provider_errors: list[ProviderError],
    ) -> None:
        self.record_id = record_id
        self.attempts = attempts
        self.provider_errors = provider_errors
        last = provider_errors[-1] if provider_errors else None
        detail = f": last error {last}" if last else ""
        super().__init__(
            f"Delivery {record_id} exhausted after {len(attempts)} attempts{detail}"
        )


class DeliveryDeferredError(NotificationEngineError):
    """
    The calling task gave up ownership of a pending record.

    Raised when the claim stored in the delivery log would lapse before the
    next repetition completes, or when another worker already took the
    record over. The retry sweep continues the record.
    """
    error_code = "DELIVERY_DEFERRED"

    def __init__(
        self,
        record_id: str,
        attempts: list[DeliveryAttempt],
        reason: str,
    ) -> None:
        self.record_id = record_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Delivery {record_id} deferred after {len(attempts)} attempts: {reason}"
        )
