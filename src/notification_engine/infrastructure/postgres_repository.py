"""
Notification Delivery Engine - PostgreSQL Delivery Log.

PostgreSQL-backed delivery log. Uses asyncpg with a connection pool; the
attempt history is stored as a JSONB array and updates are guarded by the
record version inside a row-locking transaction.

Architecture Layer: Infrastructure
Principles: Repository Pattern, Dependency Inversion, Optimistic Concurrency
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import asyncpg
import structlog

from ..domain.entities import (
    DeliveryAttempt,
    DeliveryQuery,
    DeliveryRecord,
    DeliveryStatistics,
    FinalOutcome,
)
from .repository import (
    RECENT_FAILURES_LIMIT,
    ConcurrencyError,
    DeliveryLogRepository,
    StoreUnavailableError,
    check_append_only,
)

logger = structlog.get_logger(__name__)

_UNAVAILABLE_ERRORS = (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError)

_COLUMNS = """
    record_id, event_name, template_type, recipient, rendered_subject,
    rendered_body, attempts, final_outcome, created_at, updated_at, version,
    claim_token, claim_expires_at, rendered_html
"""


class PostgresDeliveryLogRepository(DeliveryLogRepository):
    """PostgreSQL implementation of the delivery log."""

    def __init__(self, pool: asyncpg.Pool, table: str = "delivery_records") -> None:
        self._pool = pool
        self._table = table

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, reporting outages as StoreUnavailableError."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as e:
            logger.error("delivery_store_unavailable", operation=operation, error=str(e))
            raise StoreUnavailableError(operation, str(e)) from e

    async def ensure_schema(self) -> None:
        """Create the delivery log table and its indexes if missing."""
        async with self._connection("ensure_schema") as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    record_id TEXT PRIMARY KEY,
                    event_name TEXT NOT NULL,
                    template_type TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    rendered_subject TEXT NOT NULL,
                    rendered_body TEXT NOT NULL,
                    attempts JSONB NOT NULL DEFAULT '[]'::jsonb,
                    final_outcome TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    version INTEGER NOT NULL,
                    claim_token TEXT,
                    claim_expires_at TIMESTAMPTZ,
                    rendered_html TEXT
                );
                ALTER TABLE {self._table} ADD COLUMN IF NOT EXISTS rendered_html TEXT;
                CREATE INDEX IF NOT EXISTS {self._table.replace('.', '_')}_outcome_idx
                    ON {self._table} (final_outcome, updated_at);
                CREATE INDEX IF NOT EXISTS {self._table.replace('.', '_')}_created_idx
                    ON {self._table} (created_at);
            """)
        logger.info("delivery_log_schema_ready", table=self._table)

    async def upsert(self, record: DeliveryRecord) -> DeliveryRecord:
        new_version = record.version + 1
        async with self._connection("upsert") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {self._table} WHERE record_id = $1 FOR UPDATE",
                    record.record_id,
                )
                actual_version = row["version"] if row else 0
                if record.version != actual_version:
                    raise ConcurrencyError("DeliveryRecord", record.record_id,
                                           record.version, actual_version)
                if row is None:
                    await conn.execute(
                        f"""
                        INSERT INTO {self._table} ({_COLUMNS})
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13, $14)
                        """,
                        *self._entity_to_params(record, new_version),
                    )
                else:
                    check_append_only(self._row_to_entity(dict(row)), record)
                    await conn.execute(
                        f"""
                        UPDATE {self._table} SET
                            attempts = $7::jsonb,
                            final_outcome = $8,
                            updated_at = $10,
                            version = $11,
                            claim_token = $12,
                            claim_expires_at = $13
                        WHERE record_id = $1 AND version = $15
                        """,
                        *self._entity_to_params(record, new_version),
                        record.version,
                    )
        logger.debug("delivery_record_saved_postgres", record_id=record.record_id,
                     version=new_version, outcome=record.final_outcome.value)
        return record.model_copy(deep=True, update={"version": new_version})

    async def get(self, record_id: str) -> DeliveryRecord | None:
        async with self._connection("get") as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {self._table} WHERE record_id = $1", record_id
            )
        return self._row_to_entity(dict(row)) if row else None

    async def query(self, query: DeliveryQuery) -> list[DeliveryRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.template_type:
            params.append(query.template_type)
            clauses.append(f"template_type = ${len(params)}")
        if query.event_name:
            params.append(query.event_name)
            clauses.append(f"event_name = ${len(params)}")
        if query.only_failed:
            params.append(FinalOutcome.EXHAUSTED.value)
            clauses.append(f"final_outcome = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if query.newest_first else "ASC"
        params.append(query.limit)
        sql = (
            f"SELECT {_COLUMNS} FROM {self._table} {where} "
            f"ORDER BY created_at {order} LIMIT ${len(params)}"
        )
        async with self._connection("query") as conn:
            rows = await conn.fetch(sql, *params)
        return [self._row_to_entity(dict(row)) for row in rows]

    async def statistics(self) -> DeliveryStatistics:
        async with self._connection("statistics") as conn:
            counts = await conn.fetchrow(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE final_outcome = $1) AS successful,
                    COUNT(*) FILTER (WHERE final_outcome = $2) AS failed
                FROM {self._table}
                """,
                FinalOutcome.SUCCEEDED.value,
                FinalOutcome.EXHAUSTED.value,
            )
            failure_rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {self._table}
                WHERE final_outcome = $1
                ORDER BY created_at DESC LIMIT $2
                """,
                FinalOutcome.EXHAUSTED.value,
                RECENT_FAILURES_LIMIT,
            )
        total, successful, failed = counts["total"], counts["successful"], counts["failed"]
        return DeliveryStatistics(
            total=total,
            successful=successful,
            failed=failed,
            pending=total - successful - failed,
            success_rate=DeliveryStatistics.compute_success_rate(successful, total),
            recent_failures=[self._row_to_entity(dict(row)) for row in failure_rows],
        )

    async def purge_older_than(self, age: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - age
        async with self._connection("purge") as conn:
            result = await conn.execute(
                f"DELETE FROM {self._table} WHERE final_outcome <> $1 AND created_at < $2",
                FinalOutcome.PENDING.value,
                cutoff,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        count = int(result.split()[-1]) if result else 0
        logger.info("delivery_records_purged", count=count, cutoff=cutoff.isoformat())
        return count

    async def find_resumable(
        self,
        max_attempts: int,
        now: datetime,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        async with self._connection("find_resumable") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {self._table}
                WHERE final_outcome <> $1
                  AND jsonb_array_length(attempts) < $2
                  AND (jsonb_array_length(attempts) = 0
                       OR NOT (attempts -> -1 ->> 'succeeded')::boolean)
                  AND (claim_token IS NULL OR claim_expires_at <= $3)
                ORDER BY updated_at ASC
                LIMIT $4
                """,
                FinalOutcome.SUCCEEDED.value,
                max_attempts,
                now,
                limit,
            )
        return [self._row_to_entity(dict(row)) for row in rows]

    def _entity_to_params(self, record: DeliveryRecord, version: int) -> tuple[Any, ...]:
        return (
            record.record_id,
            record.event_name,
            record.template_type,
            record.recipient,
            record.rendered_subject,
            record.rendered_body,
            json.dumps([a.model_dump(mode="json") for a in record.attempts]),
            record.final_outcome.value,
            record.created_at,
            record.updated_at,
            version,
            record.claim_token,
            record.claim_expires_at,
            record.rendered_html,
        )

    def _row_to_entity(self, row: dict[str, Any]) -> DeliveryRecord:
        attempts = row["attempts"]
        if isinstance(attempts, str):
            attempts = json.loads(attempts)
        return DeliveryRecord(
            record_id=row["record_id"],
            event_name=row["event_name"],
            template_type=row["template_type"],
            recipient=row["recipient"],
            rendered_subject=row["rendered_subject"],
            rendered_body=row["rendered_body"],
            attempts=[DeliveryAttempt.model_validate(a) for a in attempts],
            final_outcome=FinalOutcome(row["final_outcome"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
            claim_token=row["claim_token"],
            claim_expires_at=row["claim_expires_at"],
            rendered_html=row.get("rendered_html"),
        )
