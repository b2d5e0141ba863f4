"""
Unit tests for delivery log entities.
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from notification_engine.domain.entities import (
    DeliveryAttempt,
    DeliveryRecord,
    DeliveryReport,
    DeliveryStatistics,
    FinalOutcome,
)
from notification_engine.domain.exceptions import ProviderErrorKind

NOW = datetime(2025, 1, 4, 9, 0, tzinfo=timezone.utc)


def _record() -> DeliveryRecord:
    return DeliveryRecord(
        event_name="booking_created",
        template_type="booking_confirmation",
        recipient="guest@example.com",
        rendered_subject="Subject",
        rendered_body="Body",
    )


def _failed(number: int) -> DeliveryAttempt:
    return DeliveryAttempt(attempt_number=number, provider_used="brevo", succeeded=False,
                           error_kind=ProviderErrorKind.TRANSPORT, timestamp=NOW)


def _succeeded(number: int) -> DeliveryAttempt:
    return DeliveryAttempt(attempt_number=number, provider_used="smtp", succeeded=True,
                           provider_message_id="<m@x>", timestamp=NOW)


class TestDeliveryRecord:
    """Tests for attempt recording and outcome derivation."""

    def test_new_record_is_pending(self):
        record = _record()
        assert record.final_outcome == FinalOutcome.PENDING
        assert record.attempts == []
        assert record.version == 0
        assert record.is_resumable(3) is True

    def test_success_is_terminal(self):
        """Test a successful attempt ends the record."""
        record = _record()
        record.record_attempt(_failed(1), max_attempts=3)
        record.record_attempt(_succeeded(2), max_attempts=3)

        assert record.final_outcome == FinalOutcome.SUCCEEDED
        assert record.is_terminal is True
        assert record.updated_at == NOW
        with pytest.raises(ValueError):
            record.record_attempt(_failed(3), max_attempts=3)

    def test_exhausted_after_budget(self):
        record = _record()
        for number in (1, 2, 3):
            record.record_attempt(_failed(number), max_attempts=3)

        assert record.final_outcome == FinalOutcome.EXHAUSTED
        assert record.is_resumable(3) is False

    def test_out_of_sequence_attempt_rejected(self):
        record = _record()
        with pytest.raises(ValueError):
            record.record_attempt(_failed(2), max_attempts=3)

    def test_budget_enforced(self):
        """Test len(attempts) can never exceed max_attempts."""
        record = _record()
        record.record_attempt(_failed(1), max_attempts=1)
        assert record.final_outcome == FinalOutcome.EXHAUSTED

        record.reopen()
        with pytest.raises(ValueError):
            record.record_attempt(_failed(2), max_attempts=1)

    def test_reopen_after_budget_raised(self):
        record = _record()
        record.record_attempt(_failed(1), max_attempts=1)
        assert record.is_resumable(3) is True

        record.reopen()
        record.record_attempt(_succeeded(2), max_attempts=3)
        assert record.final_outcome == FinalOutcome.SUCCEEDED

    def test_reopen_leaves_succeeded_alone(self):
        record = _record()
        record.record_attempt(_succeeded(1), max_attempts=3)
        record.reopen()
        assert record.final_outcome == FinalOutcome.SUCCEEDED

    def test_claim_lifecycle(self):
        """Test claims expire and can be released."""
        record = _record()
        assert record.is_claimed(NOW) is False

        record.claim("token", NOW, timedelta(minutes=5))
        assert record.is_claimed(NOW + timedelta(minutes=4)) is True
        assert record.is_claimed(NOW + timedelta(minutes=5)) is False

        record.release()
        assert record.claim_token is None
        assert record.is_claimed(NOW) is False

    def test_attempts_are_immutable(self):
        attempt = _failed(1)
        with pytest.raises(ValidationError):
            attempt.succeeded = True


class TestDeliveryStatistics:

    def test_success_rate(self):
        assert DeliveryStatistics.compute_success_rate(0, 0) == 0.0
        assert DeliveryStatistics.compute_success_rate(2, 3) == 66.67
        assert DeliveryStatistics.compute_success_rate(5, 5) == 100.0


class TestDeliveryReport:

    def test_from_record(self):
        record = _record()
        record.record_attempt(_failed(1), max_attempts=3)
        record.record_attempt(_succeeded(2), max_attempts=3)

        report = DeliveryReport.from_record(record, timedelta(hours=1))

        assert report.record_id == record.record_id
        assert report.attempt_count == 2
        assert report.provider_used == "smtp"
        assert report.provider_message_id == "<m@x>"
        assert report.advisory_delay == timedelta(hours=1)
