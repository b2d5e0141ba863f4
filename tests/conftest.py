"""
Pytest configuration and fixtures for notification engine tests.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from notification_engine.config import (
    BrevoSettings,
    DeliverySettings,
    EngineSettings,
    OrganizationSettings,
    SMTPSettings,
)
from notification_engine.domain.orchestrator import DeliveryOrchestrator, RetryPolicy
from notification_engine.domain.providers import ProviderAdapter, ProviderChain
from notification_engine.domain.sweep import RetrySweep
from notification_engine.domain.templates import TemplateRegistry, TemplateRenderer
from notification_engine.domain.triggers import TriggerMap
from notification_engine.infrastructure.log_writer import DeliveryLogWriter
from notification_engine.infrastructure.repository import InMemoryDeliveryLogRepository
from notification_engine.observability import MetricsRegistry

from fakes import FixedClock


@pytest.fixture
def clock():
    """Clock fixed at a known instant."""
    return FixedClock(datetime(2025, 1, 4, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleep():
    """Backoff sleep that returns immediately."""
    return AsyncMock()


@pytest.fixture
def metrics():
    return MetricsRegistry()


@pytest.fixture
def repository():
    return InMemoryDeliveryLogRepository()


@pytest.fixture
def template_registry(clock):
    """Template registry with default templates and a fixed clock."""
    return TemplateRegistry(TemplateRenderer(OrganizationSettings(), clock))


@pytest.fixture
def trigger_map():
    return TriggerMap.with_defaults()


@pytest.fixture
def log_writer(repository, metrics, sleep):
    return DeliveryLogWriter(repository, metrics, retry_attempts=2, retry_delay_seconds=0.1, sleep=sleep)


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, backoff_delay=timedelta(seconds=5))


@pytest.fixture
def make_orchestrator(trigger_map, template_registry, log_writer, policy, metrics, clock, sleep):
    """Build an orchestrator around the given providers."""
    def _make(*providers: ProviderAdapter, writer: DeliveryLogWriter | None = None) -> DeliveryOrchestrator:
        return DeliveryOrchestrator(
            trigger_map,
            template_registry,
            ProviderChain(list(providers)),
            writer or log_writer,
            policy=policy,
            metrics=metrics,
            clock=clock,
            sleep=sleep,
        )
    return _make


@pytest.fixture
def make_sweep(log_writer, metrics, clock):
    def _make(orchestrator: DeliveryOrchestrator) -> RetrySweep:
        return RetrySweep(orchestrator, log_writer, metrics=metrics, clock=clock)
    return _make


@pytest.fixture
def booking_payload():
    return {
        "bookingId": "LUX-1042",
        "guestName": "Asha Rao",
        "propertyName": "Villa Azure",
        "checkIn": "2025-02-01",
        "checkOut": "2025-02-04",
        "totalAmount": "45000",
    }


@pytest.fixture
def engine_settings():
    """Engine settings with both providers configured."""
    return EngineSettings(
        delivery=DeliverySettings(max_attempts=3, backoff_seconds=5.0),
        brevo=BrevoSettings(api_key="test-key", timeout_seconds=10.0),
        smtp=SMTPSettings(host="smtp.test.com", username="test", password="secret"),
    )
