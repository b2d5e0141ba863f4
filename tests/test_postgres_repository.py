"""
Unit tests for the PostgreSQL delivery log with a mocked asyncpg pool.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from notification_engine.domain.entities import DeliveryAttempt, DeliveryQuery, DeliveryRecord, FinalOutcome
from notification_engine.infrastructure.postgres_repository import PostgresDeliveryLogRepository
from notification_engine.infrastructure.repository import (
    ConcurrencyError,
    HistoryRewriteError,
    StoreUnavailableError,
)

NOW = datetime(2025, 1, 4, 9, 0, tzinfo=timezone.utc)


class MockAsyncContextManager:
    """Helper mock for async context managers."""
    def __init__(self, return_value=None):
        self.return_value = return_value

    async def __aenter__(self):
        return self.return_value

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _record(attempts: int = 0, version: int = 0) -> DeliveryRecord:
    record = DeliveryRecord(
        record_id="rec-1",
        event_name="booking_created",
        template_type="booking_confirmation",
        recipient="guest@example.com",
        rendered_subject="S",
        rendered_body="B",
        created_at=NOW,
        updated_at=NOW,
    )
    for number in range(1, attempts + 1):
        record.record_attempt(DeliveryAttempt(attempt_number=number, provider_used="brevo",
                                              succeeded=False, timestamp=NOW), 3)
    return record.model_copy(update={"version": version})


def _row(record: DeliveryRecord) -> dict:
    return {
        "record_id": record.record_id,
        "event_name": record.event_name,
        "template_type": record.template_type,
        "recipient": record.recipient,
        "rendered_subject": record.rendered_subject,
        "rendered_body": record.rendered_body,
        "attempts": json.dumps([a.model_dump(mode="json") for a in record.attempts]),
        "final_outcome": record.final_outcome.value,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "version": record.version,
        "claim_token": record.claim_token,
        "claim_expires_at": record.claim_expires_at,
        "rendered_html": record.rendered_html,
    }


@pytest.fixture
def mock_conn():
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=MockAsyncContextManager())
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    pool = MagicMock()
    pool.acquire.return_value = MockAsyncContextManager(mock_conn)
    return pool


@pytest.fixture
def repository(mock_pool):
    return PostgresDeliveryLogRepository(mock_pool, table="delivery_records")


class TestUpsert:
    """Tests for versioned writes."""

    @pytest.mark.asyncio
    async def test_insert_new_record(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = None

        saved = await repository.upsert(_record())

        assert saved.version == 1
        sql, *params = mock_conn.execute.call_args[0]
        assert "INSERT INTO delivery_records" in sql
        assert params[0] == "rec-1"
        assert json.loads(params[6]) == []
        assert params[10] == 1

    @pytest.mark.asyncio
    async def test_update_checks_version(self, repository, mock_conn):
        stored = _record(attempts=1, version=1)
        mock_conn.fetchrow.return_value = _row(stored)
        incoming = _record(attempts=2, version=1)

        saved = await repository.upsert(incoming)

        assert saved.version == 2
        sql, *params = mock_conn.execute.call_args[0]
        assert "UPDATE delivery_records" in sql
        assert params[-1] == 1
        assert len(json.loads(params[6])) == 2

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = _row(_record(version=3))

        with pytest.raises(ConcurrencyError):
            await repository.upsert(_record(version=2))
        mock_conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history_rewrite_rejected(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = _row(_record(attempts=2, version=1))

        with pytest.raises(HistoryRewriteError):
            await repository.upsert(_record(attempts=1, version=1))

    @pytest.mark.asyncio
    async def test_connection_failure(self, repository, mock_pool):
        """Test pool errors surface as StoreUnavailableError."""
        mock_pool.acquire.side_effect = OSError("connection refused")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await repository.upsert(_record())
        assert exc_info.value.operation == "upsert"

    @pytest.mark.asyncio
    async def test_interface_error(self, repository, mock_conn):
        mock_conn.fetchrow.side_effect = asyncpg.InterfaceError("connection is closed")

        with pytest.raises(StoreUnavailableError):
            await repository.get("rec-1")


class TestReads:
    """Tests for queries and housekeeping."""

    @pytest.mark.asyncio
    async def test_get_decodes_attempts(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = _row(_record(attempts=2, version=4))

        record = await repository.get("rec-1")

        assert record.version == 4
        assert [a.attempt_number for a in record.attempts] == [1, 2]
        assert record.final_outcome == FinalOutcome.PENDING

    @pytest.mark.asyncio
    async def test_get_missing(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = None
        assert await repository.get("missing") is None

    @pytest.mark.asyncio
    async def test_query_builds_filters(self, repository, mock_conn):
        mock_conn.fetch.return_value = []

        await repository.query(DeliveryQuery(template_type="booking_confirmation", only_failed=True, limit=5))

        sql, *params = mock_conn.fetch.call_args[0]
        assert "template_type = $1" in sql
        assert "final_outcome = $2" in sql
        assert "ORDER BY created_at DESC LIMIT $3" in sql
        assert params == ["booking_confirmation", "exhausted", 5]

    @pytest.mark.asyncio
    async def test_statistics(self, repository, mock_conn):
        mock_conn.fetchrow.return_value = {"total": 4, "successful": 3, "failed": 1}
        mock_conn.fetch.return_value = []

        stats = await repository.statistics()

        assert stats.pending == 0
        assert stats.success_rate == 75.0

    @pytest.mark.asyncio
    async def test_purge_parses_command_tag(self, repository, mock_conn):
        mock_conn.execute.return_value = "DELETE 3"

        purged = await repository.purge_older_than(timedelta(days=30), now=NOW)

        assert purged == 3
        _, outcome, cutoff = mock_conn.execute.call_args[0]
        assert outcome == "pending"
        assert cutoff == NOW - timedelta(days=30)

    @pytest.mark.asyncio
    async def test_find_resumable(self, repository, mock_conn):
        mock_conn.fetch.return_value = [_row(_record(attempts=1, version=2))]

        records = await repository.find_resumable(3, NOW, limit=10)

        assert [r.record_id for r in records] == ["rec-1"]
        _, outcome, max_attempts, now, limit = mock_conn.fetch.call_args[0]
        assert (outcome, max_attempts, now, limit) == ("succeeded", 3, NOW, 10)
