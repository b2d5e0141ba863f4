"""
Notification Delivery Engine - Delivery Log Repository.

Repository abstraction for delivery records with an in-memory
implementation. Writes are optimistic: each record carries a version, an
update must present the version it read, and the stored attempt history may
only grow.

Architecture Layer: Infrastructure
Principles: Repository Pattern, Dependency Inversion, Optimistic Concurrency
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from ..config import StoreSettings
from ..domain.entities import (
    DeliveryQuery,
    DeliveryRecord,
    DeliveryStatistics,
    FinalOutcome,
)

logger = structlog.get_logger(__name__)

RECENT_FAILURES_LIMIT = 10


# --- Exceptions ---


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class StoreUnavailableError(RepositoryError):
    """The backing store could not be reached."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Delivery log store unavailable during {operation}: {reason}")


class ConcurrencyError(RepositoryError):
    """Optimistic concurrency violation."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        actual_version: int,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict for {entity_type} {entity_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class HistoryRewriteError(RepositoryError):
    """An update would drop or alter previously stored attempts."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Attempt history of DeliveryRecord {record_id} is append-only")


def check_append_only(stored: DeliveryRecord, incoming: DeliveryRecord) -> None:
    """Raise unless the stored attempts are a prefix of the incoming ones."""
    if len(incoming.attempts) < len(stored.attempts):
        raise HistoryRewriteError(incoming.record_id)
    if incoming.attempts[:len(stored.attempts)] != stored.attempts:
        raise HistoryRewriteError(incoming.record_id)


# --- Abstract Repository ---


class DeliveryLogRepository(ABC):
    """
    Abstract repository for delivery records.

    Exactly one repository instance is the source of truth for delivery
    history; implementations must not cache records outside of it.
    """

    @abstractmethod
    async def upsert(self, record: DeliveryRecord) -> DeliveryRecord:
        """
        Create or update a record with an optimistic version check.

        A new record must carry version 0. An update must carry the version
        currently stored.

        Args:
            record: Record to store

        Returns:
            Stored copy with the incremented version

        Raises:
            ConcurrencyError: If the version does not match the stored one
            HistoryRewriteError: If stored attempts would be lost
            StoreUnavailableError: If the backend cannot be reached
        """

    @abstractmethod
    async def get(self, record_id: str) -> DeliveryRecord | None:
        """Get a record by ID."""

    @abstractmethod
    async def query(self, query: DeliveryQuery) -> list[DeliveryRecord]:
        """List records matching a filter, ordered by creation time."""

    @abstractmethod
    async def statistics(self) -> DeliveryStatistics:
        """Aggregate counts over the whole log."""

    @abstractmethod
    async def purge_older_than(self, age: timedelta, now: datetime | None = None) -> int:
        """
        Delete terminal records created before ``now - age``.

        Pending records are never purged.

        Returns:
            Number of deleted records
        """

    @abstractmethod
    async def find_resumable(
        self,
        max_attempts: int,
        now: datetime,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        """
        Records the retry sweep may pick up.

        Not succeeded, fewer than ``max_attempts`` attempts, last attempt
        failed, and not under a live claim. Oldest update first.
        """


# --- In-Memory Implementation ---


class InMemoryDeliveryLogRepository(DeliveryLogRepository):
    """
    In-memory delivery log for testing and development.

    NOT suitable for production - data is lost on restart.
    Safe for concurrent coroutines using an asyncio lock.
    """

    def __init__(self) -> None:
        self._records: dict[str, DeliveryRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: DeliveryRecord) -> DeliveryRecord:
        async with self._lock:
            stored = self._records.get(record.record_id)
            actual_version = stored.version if stored else 0
            if record.version != actual_version:
                raise ConcurrencyError("DeliveryRecord", record.record_id,
                                       record.version, actual_version)
            if stored is not None:
                check_append_only(stored, record)
            saved = record.model_copy(deep=True, update={"version": actual_version + 1})
            self._records[record.record_id] = saved
            logger.debug("delivery_record_saved", record_id=record.record_id,
                         version=saved.version, outcome=saved.final_outcome.value)
            return saved.model_copy(deep=True)

    async def get(self, record_id: str) -> DeliveryRecord | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def query(self, query: DeliveryQuery) -> list[DeliveryRecord]:
        records = [r for r in self._records.values() if _matches(r, query)]
        records.sort(key=lambda r: r.created_at, reverse=query.newest_first)
        return [r.model_copy(deep=True) for r in records[:query.limit]]

    async def statistics(self) -> DeliveryStatistics:
        records = list(self._records.values())
        successful = sum(1 for r in records if r.final_outcome == FinalOutcome.SUCCEEDED)
        failures = [r for r in records if r.final_outcome == FinalOutcome.EXHAUSTED]
        failures.sort(key=lambda r: r.created_at, reverse=True)
        return DeliveryStatistics(
            total=len(records),
            successful=successful,
            failed=len(failures),
            pending=len(records) - successful - len(failures),
            success_rate=DeliveryStatistics.compute_success_rate(successful, len(records)),
            recent_failures=[r.model_copy(deep=True) for r in failures[:RECENT_FAILURES_LIMIT]],
        )

    async def purge_older_than(self, age: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - age
        async with self._lock:
            expired = [
                record_id for record_id, r in self._records.items()
                if r.is_terminal and r.created_at < cutoff
            ]
            for record_id in expired:
                del self._records[record_id]
        logger.info("delivery_records_purged", count=len(expired), cutoff=cutoff.isoformat())
        return len(expired)

    async def find_resumable(
        self,
        max_attempts: int,
        now: datetime,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        candidates = [
            r for r in self._records.values()
            if r.is_resumable(max_attempts) and not r.is_claimed(now)
        ]
        candidates.sort(key=lambda r: r.updated_at)
        return [r.model_copy(deep=True) for r in candidates[:limit]]

    # --- Testing Utilities ---

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


def _matches(record: DeliveryRecord, query: DeliveryQuery) -> bool:
    if query.template_type and record.template_type != query.template_type:
        return False
    if query.event_name and record.event_name != query.event_name:
        return False
    if query.only_failed and record.final_outcome != FinalOutcome.EXHAUSTED:
        return False
    return True


# --- Factory ---


class RepositoryFactory:
    """
    Factory for the delivery log repository.

    Chooses the backend from configuration and hands out a single instance.
    """

    def __init__(self, settings: StoreSettings | None = None, pool: Any | None = None) -> None:
        self._settings = settings or StoreSettings()
        self._pool = pool
        self._repository: DeliveryLogRepository | None = None

    def get_delivery_log_repository(self) -> DeliveryLogRepository:
        """Get or create the delivery log repository."""
        if self._repository is None:
            if self._settings.backend == "postgres":
                if self._pool is None:
                    raise RepositoryError("PostgreSQL backend selected but no connection pool given")
                from .postgres_repository import PostgresDeliveryLogRepository
                self._repository = PostgresDeliveryLogRepository(
                    self._pool,
                    table=self._settings.table_name,
                )
                logger.info("delivery_log_repository_created", type="postgres")
            else:
                self._repository = InMemoryDeliveryLogRepository()
                logger.info("delivery_log_repository_created", type="in_memory")
        return self._repository
