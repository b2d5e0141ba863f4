"""
Notification Delivery Engine - Domain Layer.

Templates, trigger rules, provider adapters and delivery records. The
orchestrator and retry sweep live in their own modules because they depend
on the delivery log infrastructure.
"""
from .exceptions import (
    NotificationEngineError,
    ConfigurationError,
    NotConfiguredError,
    NoTemplateError,
    DuplicateTriggerError,
    RenderError,
    ProviderError,
    ProviderErrorKind,
    ExhaustedRetriesError,
    DeliveryDeferredError,
)
from .entities import (
    FinalOutcome,
    DeliveryAttempt,
    DeliveryRecord,
    DeliveryQuery,
    DeliveryStatistics,
    DeliveryReport,
)
from .templates import (
    NotificationTemplate,
    RenderedMessage,
    TemplateRenderer,
    TemplateRegistry,
)
from .triggers import TriggerRule, TriggerMap
from .providers import (
    ProviderOutcome,
    ProviderAdapter,
    BrevoProvider,
    SMTPProvider,
    ProviderChain,
    ChainResult,
)

__all__ = [
    # Errors
    "NotificationEngineError",
    "ConfigurationError",
    "NotConfiguredError",
    "NoTemplateError",
    "DuplicateTriggerError",
    "RenderError",
    "ProviderError",
    "ProviderErrorKind",
    "ExhaustedRetriesError",
    "DeliveryDeferredError",
    # Entities
    "FinalOutcome",
    "DeliveryAttempt",
    "DeliveryRecord",
    "DeliveryQuery",
    "DeliveryStatistics",
    "DeliveryReport",
    # Templates
    "NotificationTemplate",
    "RenderedMessage",
    "TemplateRenderer",
    "TemplateRegistry",
    # Triggers
    "TriggerRule",
    "TriggerMap",
    # Providers
    "ProviderOutcome",
    "ProviderAdapter",
    "BrevoProvider",
    "SMTPProvider",
    "ProviderChain",
    "ChainResult",
]
