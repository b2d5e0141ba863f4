"""
Notification Delivery Engine - Delivery Orchestrator.

Turns a business event into a delivered notification: resolves the trigger
rule and template, renders the message, then runs up to ``max_attempts``
repetitions through the provider chain, persisting the record after every
repetition.

Architecture Layer: Domain
Principles: Orchestration, Bounded Retry, Explicit Error Propagation
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field
import structlog

from ..infrastructure.log_writer import DeliveryLogWriter
from ..infrastructure.repository import ConcurrencyError
from ..observability import MetricsRegistry, new_correlation_id
from .entities import DeliveryAttempt, DeliveryRecord, DeliveryReport, FinalOutcome
from .exceptions import (
    ConfigurationError,
    DeliveryDeferredError,
    ExhaustedRetriesError,
    NoTemplateError,
    NotConfiguredError,
    ProviderError,
)
from .providers import ProviderChain
from .templates import TemplateRegistry
from .triggers import TriggerMap

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy(BaseModel):
    """Attempt budget and pacing for one delivery record."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_delay: timedelta = Field(default=timedelta(seconds=5))
    claim_ttl: timedelta = Field(default=timedelta(minutes=5))

    model_config = {"frozen": True}


class DeliveryOrchestrator:
    """
    Coordinates trigger resolution, rendering, dispatch and persistence.

    Records move ``pending -> succeeded | exhausted``. The calling task holds
    a claim on its record for as long as it runs repetitions.
    """

    def __init__(
        self,
        trigger_map: TriggerMap,
        template_registry: TemplateRegistry,
        provider_chain: ProviderChain,
        log_writer: DeliveryLogWriter,
        policy: RetryPolicy | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._triggers = trigger_map
        self._templates = template_registry
        self._chain = provider_chain
        self._writer = log_writer
        self._policy = policy or RetryPolicy()
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._sleep = sleep

        repetition = self._policy.backoff_delay.total_seconds() + self._chain.timeout_budget
        if self._policy.claim_ttl.total_seconds() <= repetition:
            raise ConfigurationError(
                f"claim_ttl must exceed one repetition ({repetition}s)"
            )
        logger.info("delivery_orchestrator_initialized",
                    max_attempts=self._policy.max_attempts,
                    backoff_seconds=self._policy.backoff_delay.total_seconds(),
                    providers=self._chain.provider_names)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def trigger_event(
        self,
        event_name: str,
        recipient: str,
        payload: dict[str, Any] | None = None,
    ) -> DeliveryReport:
        """
        Deliver the notification bound to a business event.

        Args:
            event_name: Business event name, e.g. ``booking_created``
            recipient: Target e-mail address
            payload: Template variables

        Returns:
            DeliveryReport for a succeeded record

        Raises:
            NotConfiguredError: No enabled rule matches the event; no record is created
            NoTemplateError: No active template for the rule; no record is created
            ExhaustedRetriesError: Every repetition failed
            DeliveryDeferredError: The record was handed to the retry sweep before
                reaching a final outcome
        """
        payload = payload or {}
        correlation_id = new_correlation_id()
        log = logger.bind(event_name=event_name, recipient=recipient, correlation_id=correlation_id)

        try:
            rule = self._triggers.resolve(event_name)
            if not rule.matches(payload):
                raise NotConfiguredError(event_name, reason="trigger conditions not met")
        except NotConfiguredError as e:
            self._metrics.counter("events_not_configured", labels={"event": event_name})
            log.warning("event_dropped", reason=e.reason)
            raise

        try:
            template = self._templates.resolve(rule.template_type)
        except NoTemplateError:
            self._metrics.counter("events_without_template", labels={"template_type": rule.template_type})
            log.warning("event_template_missing", template_type=rule.template_type)
            raise

        rendered = self._templates.render(template, payload)
        now = self._clock()
        token = str(uuid4())
        record = DeliveryRecord(
            event_name=event_name,
            template_type=rule.template_type,
            recipient=recipient,
            rendered_subject=rendered.subject,
            rendered_body=rendered.body,
            rendered_html=rendered.html_body,
            created_at=now,
            updated_at=now,
        )
        record.claim(token, now, self._policy.claim_ttl)
        record = await self._writer.persist(record)
        self._metrics.counter("deliveries_triggered", labels={"template_type": rule.template_type})
        log.info("delivery_record_created", record_id=record.record_id,
                 template_type=rule.template_type, template_id=template.template_id)
        if rule.advisory_delay:
            log.info("advisory_delay_reported", record_id=record.record_id,
                     advisory_delay_seconds=rule.advisory_delay.total_seconds())

        return await self._run(record, token, rule.advisory_delay)

    async def resume(self, record: DeliveryRecord) -> DeliveryReport:
        """
        Continue a claimed record that still has attempt budget.

        The caller must already hold the claim, as the retry sweep does.

        Raises:
            ValueError: If the record is not claimed or has nothing left to try
            ExhaustedRetriesError: If the remaining repetitions all fail
            DeliveryDeferredError: If the claim lapses or is taken over
        """
        if record.claim_token is None:
            raise ValueError(f"Record {record.record_id} must be claimed before resuming")
        if not record.is_resumable(self._policy.max_attempts) or record.is_terminal:
            raise ValueError(f"Record {record.record_id} is not resumable")
        logger.info("delivery_resumed", record_id=record.record_id,
                    attempts=len(record.attempts), max_attempts=self._policy.max_attempts)
        return await self._run(record, record.claim_token, timedelta(0))

    async def _run(
        self,
        record: DeliveryRecord,
        token: str,
        advisory_delay: timedelta,
    ) -> DeliveryReport:
        max_attempts = self._policy.max_attempts
        errors: list[ProviderError] = []
        # expiry of the claim a retry sweep would see for this record
        leased_until = record.claim_expires_at

        while not record.is_terminal and len(record.attempts) < max_attempts:
            await self._backoff(record)
            if not self._lease_covers_repetition(leased_until):
                self._metrics.counter("deliveries_deferred", labels={"reason": "lease_expiring"})
                logger.warning("delivery_deferred", record_id=record.record_id,
                               attempts=len(record.attempts),
                               leased_until=leased_until.isoformat() if leased_until else None)
                raise DeliveryDeferredError(
                    record.record_id, list(record.attempts),
                    "claim would lapse before the next repetition completes",
                )
            started = time.monotonic()
            result = await self._chain.dispatch(
                record.recipient, record.rendered_subject, record.rendered_body,
                record.rendered_html,
            )
            self._metrics.histogram("dispatch_duration_seconds", time.monotonic() - started,
                                    labels={"provider": result.outcome.provider})
            errors.extend(result.errors)
            for error in result.errors:
                self._metrics.counter("provider_failures", labels={
                    "provider": error.provider, "kind": error.error_kind.value})

            outcome = result.outcome
            attempt = DeliveryAttempt(
                attempt_number=record.next_attempt_number,
                provider_used=outcome.provider,
                succeeded=outcome.success,
                error_kind=outcome.error_kind,
                error_message=outcome.error_message,
                provider_message_id=outcome.provider_message_id,
                timestamp=self._clock(),
            )
            record.record_attempt(attempt, max_attempts)
            if record.is_terminal:
                record.release()
            else:
                record.claim(token, attempt.timestamp, self._policy.claim_ttl)
                logger.warning("delivery_attempt_failed", record_id=record.record_id,
                               attempt=attempt.attempt_number, provider=attempt.provider_used,
                               error_kind=attempt.error_kind.value if attempt.error_kind else None)
            try:
                record = await self._writer.persist(record)
            except ConcurrencyError as e:
                self._metrics.counter("deliveries_deferred", labels={"reason": "claim_lost"})
                logger.error("delivery_claim_lost", record_id=record.record_id, error=str(e))
                raise DeliveryDeferredError(
                    record.record_id, list(record.attempts), "claim taken over by another worker"
                ) from e
            # a deferred update leaves the previously stored claim in force
            if record.version == 0 or not self._writer.is_pending(record.record_id):
                leased_until = record.claim_expires_at

        if record.final_outcome == FinalOutcome.SUCCEEDED:
            self._metrics.counter("deliveries_succeeded", labels={"template_type": record.template_type})
            logger.info("delivery_succeeded", record_id=record.record_id,
                        attempts=len(record.attempts),
                        provider=record.last_attempt.provider_used if record.last_attempt else None)
            return DeliveryReport.from_record(record, advisory_delay)

        self._metrics.counter("deliveries_exhausted", labels={"template_type": record.template_type})
        logger.error("delivery_exhausted", record_id=record.record_id,
                     attempts=len(record.attempts), errors=[str(e) for e in errors[-3:]])
        raise ExhaustedRetriesError(
            record.record_id, list(record.attempts), errors
        ) from (errors[-1] if errors else None)

    def _lease_covers_repetition(self, leased_until: datetime | None) -> bool:
        """Whether a full pass through the chain ends before the claim expires."""
        if leased_until is None:
            return False
        finish = self._clock() + timedelta(seconds=self._chain.timeout_budget)
        return finish < leased_until

    async def _backoff(self, record: DeliveryRecord) -> None:
        """Wait out the remainder of the backoff since the previous attempt."""
        last = record.last_attempt
        if last is None:
            return
        elapsed = (self._clock() - last.timestamp).total_seconds()
        remaining = self._policy.backoff_delay.total_seconds() - elapsed
        if remaining > 0:
            logger.debug("delivery_backoff", record_id=record.record_id, seconds=remaining)
            await self._sleep(remaining)
