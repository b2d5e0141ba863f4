"""
Notification Delivery Engine - Domain Entities.

Delivery records with their append-only attempt history, plus the query and
statistics value objects of the delivery log.

Architecture Layer: Domain
Principles: Rich Domain Model, Immutable Value Objects, Entity Identity
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from .exceptions import ProviderErrorKind


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FinalOutcome(str, Enum):
    """Lifecycle state of a delivery record."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class DeliveryAttempt(BaseModel):
    """One repetition: a full pass through the provider chain."""
    attempt_number: int = Field(..., ge=1)
    provider_used: str
    succeeded: bool
    error_kind: ProviderErrorKind | None = None
    error_message: str | None = None
    provider_message_id: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)

    model_config = {"frozen": True}


class DeliveryRecord(BaseModel):
    """
    Persisted history of one notification.

    Attempts are append-only and time ordered. ``version`` is the optimistic
    concurrency counter maintained by the store; the claim fields grant one
    worker the exclusive right to run repetitions until the lease expires.
    """
    record_id: str = Field(default_factory=lambda: str(uuid4()))
    event_name: str
    template_type: str
    recipient: str
    rendered_subject: str
    rendered_body: str
    rendered_html: str | None = None
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    final_outcome: FinalOutcome = Field(default=FinalOutcome.PENDING)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    version: int = Field(default=0, ge=0)
    claim_token: str | None = None
    claim_expires_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.final_outcome != FinalOutcome.PENDING

    @property
    def last_attempt(self) -> DeliveryAttempt | None:
        return self.attempts[-1] if self.attempts else None

    @property
    def next_attempt_number(self) -> int:
        return len(self.attempts) + 1

    def record_attempt(self, attempt: DeliveryAttempt, max_attempts: int) -> None:
        """
        Append an attempt and derive the final outcome.

        Raises:
            ValueError: If the record is terminal, the budget is used up or
                the attempt number is out of sequence
        """
        if self.is_terminal:
            raise ValueError(f"Record {self.record_id} is already {self.final_outcome.value}")
        if len(self.attempts) >= max_attempts:
            raise ValueError(f"Record {self.record_id} has no attempts left of {max_attempts}")
        if attempt.attempt_number != self.next_attempt_number:
            raise ValueError(
                f"Expected attempt {self.next_attempt_number}, got {attempt.attempt_number}"
            )
        self.attempts.append(attempt)
        self.updated_at = attempt.timestamp
        if attempt.succeeded:
            self.final_outcome = FinalOutcome.SUCCEEDED
        elif len(self.attempts) >= max_attempts:
            self.final_outcome = FinalOutcome.EXHAUSTED

    def is_resumable(self, max_attempts: int) -> bool:
        """Failed so far and still within the attempt budget."""
        if self.final_outcome == FinalOutcome.SUCCEEDED:
            return False
        if len(self.attempts) >= max_attempts:
            return False
        last = self.last_attempt
        return last is None or not last.succeeded

    def reopen(self) -> None:
        """Return an exhausted record to pending after the budget was raised."""
        if self.final_outcome == FinalOutcome.EXHAUSTED:
            self.final_outcome = FinalOutcome.PENDING

    def is_claimed(self, now: datetime) -> bool:
        return (
            self.claim_token is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )

    def claim(self, token: str, now: datetime, ttl: timedelta) -> None:
        self.claim_token = token
        self.claim_expires_at = now + ttl

    def release(self) -> None:
        self.claim_token = None
        self.claim_expires_at = None


class DeliveryQuery(BaseModel):
    """Filter for delivery log queries."""
    template_type: str | None = None
    event_name: str | None = None
    only_failed: bool = False
    limit: int = Field(default=50, ge=1, le=1000)
    newest_first: bool = True


class DeliveryStatistics(BaseModel):
    """Aggregate view of the delivery log."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    success_rate: float = 0.0
    recent_failures: list[DeliveryRecord] = Field(default_factory=list)

    @staticmethod
    def compute_success_rate(successful: int, total: int) -> float:
        if total == 0:
            return 0.0
        return round(successful / total * 100, 2)


class DeliveryReport(BaseModel):
    """What ``trigger_event`` and the retry sweep report for one record."""
    record_id: str
    event_name: str
    template_type: str
    recipient: str
    final_outcome: FinalOutcome
    attempt_count: int
    provider_used: str | None = None
    provider_message_id: str | None = None
    advisory_delay: timedelta = Field(default=timedelta(0))

    @classmethod
    def from_record(cls, record: DeliveryRecord, advisory_delay: timedelta = timedelta(0)) -> DeliveryReport:
        last = record.last_attempt
        return cls(
            record_id=record.record_id,
            event_name=record.event_name,
            template_type=record.template_type,
            recipient=record.recipient,
            final_outcome=record.final_outcome,
            attempt_count=len(record.attempts),
            provider_used=last.provider_used if last else None,
            provider_message_id=last.provider_message_id if last else None,
            advisory_delay=advisory_delay,
        )
