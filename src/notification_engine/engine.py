"""
Notification Delivery Engine - Assembly.

Builds the engine's components once from settings and wires them together
through constructors. The returned DeliveryEngine owns every long-lived
resource and is closed as a unit.

Architecture Layer: Application
Principles: Dependency Injection, Composition Root
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import structlog

from .config import EngineSettings
from .domain.orchestrator import DeliveryOrchestrator, RetryPolicy
from .domain.providers import BrevoProvider, ProviderAdapter, ProviderChain, SMTPProvider
from .domain.sweep import RetrySweep
from .domain.templates import TemplateRegistry, TemplateRenderer
from .domain.triggers import TriggerMap
from .infrastructure.log_writer import DeliveryLogWriter
from .infrastructure.repository import DeliveryLogRepository, InMemoryDeliveryLogRepository
from .observability import MetricsRegistry

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeliveryEngine:
    """Handle on a fully wired delivery engine."""
    settings: EngineSettings
    orchestrator: DeliveryOrchestrator
    sweep: RetrySweep
    repository: DeliveryLogRepository
    log_writer: DeliveryLogWriter
    templates: TemplateRegistry
    triggers: TriggerMap
    chain: ProviderChain
    metrics: MetricsRegistry

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Apply the retention window to the delivery log."""
        retention = timedelta(days=self.settings.delivery.retention_days)
        return await self.repository.purge_older_than(retention, now)

    async def aclose(self) -> None:
        await self.chain.aclose()
        logger.info("delivery_engine_closed")


def build_providers(settings: EngineSettings) -> list[ProviderAdapter]:
    """Enabled providers in failover order: primary first."""
    providers: list[ProviderAdapter] = []
    if settings.brevo.enabled:
        providers.append(BrevoProvider(settings.brevo))
    if settings.smtp.enabled:
        providers.append(SMTPProvider(settings.smtp))
    return providers


def build_delivery_engine(
    settings: EngineSettings,
    repository: DeliveryLogRepository | None = None,
    providers: list[ProviderAdapter] | None = None,
    trigger_map: TriggerMap | None = None,
    template_registry: TemplateRegistry | None = None,
    clock: Callable[[], datetime] = _utc_now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DeliveryEngine:
    """
    Factory function to create a configured delivery engine.

    Args:
        settings: Loaded engine settings
        repository: Delivery log; in-memory when omitted
        providers: Provider adapters in failover order; built from settings when omitted
        trigger_map: Trigger rules; loaded from ``triggers_file`` or the defaults when omitted
        template_registry: Templates; the built-in defaults when omitted
        clock: Source of the current time
        sleep: Coroutine used for backoff waits

    Returns:
        Wired DeliveryEngine
    """
    metrics = MetricsRegistry(prefix=settings.observability.metrics_prefix)
    repository = repository or InMemoryDeliveryLogRepository()

    if trigger_map is None:
        if settings.delivery.triggers_file:
            trigger_map = TriggerMap.from_file(settings.delivery.triggers_file)
        else:
            trigger_map = TriggerMap.with_defaults()
    if template_registry is None:
        template_registry = TemplateRegistry(TemplateRenderer(settings.organization, clock))

    chain = ProviderChain(providers if providers is not None else build_providers(settings))
    log_writer = DeliveryLogWriter(
        repository,
        metrics,
        retry_attempts=settings.delivery.store_retry_attempts,
        retry_delay_seconds=settings.delivery.store_retry_delay_seconds,
        sleep=sleep,
    )
    policy = RetryPolicy(
        max_attempts=settings.delivery.max_attempts,
        backoff_delay=timedelta(seconds=settings.delivery.backoff_seconds),
        claim_ttl=timedelta(seconds=settings.delivery.claim_ttl_seconds),
    )
    orchestrator = DeliveryOrchestrator(
        trigger_map,
        template_registry,
        chain,
        log_writer,
        policy=policy,
        metrics=metrics,
        clock=clock,
        sleep=sleep,
    )
    sweep = RetrySweep(
        orchestrator,
        log_writer,
        metrics=metrics,
        batch_size=settings.delivery.sweep_batch_size,
        clock=clock,
    )
    logger.info("delivery_engine_built", providers=chain.provider_names,
                triggers=len(trigger_map), store=type(repository).__name__)
    return DeliveryEngine(
        settings=settings,
        orchestrator=orchestrator,
        sweep=sweep,
        repository=repository,
        log_writer=log_writer,
        templates=template_registry,
        triggers=trigger_map,
        chain=chain,
        metrics=metrics,
    )
