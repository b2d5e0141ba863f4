"""
Notification Delivery Engine - Delivery Log Writer.

The orchestrator's only path to the delivery log. A failed write is retried
with its own budget; when the store stays unreachable the latest snapshot of
the record is kept pending and written on the record's next write or by the
retry sweep, so the send path never fails because the log is down.

Architecture Layer: Infrastructure
Principles: Fault Isolation, Single Source of Truth
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

import structlog

from ..domain.entities import DeliveryRecord
from ..observability import MetricsRegistry
from .repository import ConcurrencyError, DeliveryLogRepository, StoreUnavailableError

logger = structlog.get_logger(__name__)

WRITE_FAILURE_METRIC = "delivery_log_write_failures"


class DeliveryLogWriter:
    """Persists delivery records and absorbs store outages."""

    def __init__(
        self,
        repository: DeliveryLogRepository,
        metrics: MetricsRegistry,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._metrics = metrics
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self._pending: dict[str, DeliveryRecord] = {}

    @property
    def repository(self) -> DeliveryLogRepository:
        return self._repository

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, record_id: str) -> bool:
        """Whether the latest write of a record is still waiting for the store."""
        return record_id in self._pending

    async def persist(self, record: DeliveryRecord) -> DeliveryRecord:
        """
        Write a record, returning the stored copy.

        If every retry fails the record is returned unchanged (its version
        not bumped) and remembered as pending.

        Raises:
            ConcurrencyError: If another writer updated the record first
        """
        try:
            saved = await self._write_with_retry(record)
        except ConcurrencyError:
            self._pending.pop(record.record_id, None)
            raise
        except StoreUnavailableError as e:
            self._pending[record.record_id] = record.model_copy(deep=True)
            logger.error("delivery_log_write_deferred", record_id=record.record_id,
                         outcome=record.final_outcome.value, error=str(e),
                         pending=len(self._pending))
            return record
        self._pending.pop(record.record_id, None)
        return saved

    async def flush_pending(self, now: datetime | None = None) -> int:
        """
        Replay deferred snapshots. Returns how many were written.

        Snapshots still under a live claim belong to an in-flight delivery,
        which writes them itself on its next repetition.
        """
        now = now or datetime.now(timezone.utc)
        flushed = 0
        for record_id, snapshot in list(self._pending.items()):
            if snapshot.is_claimed(now):
                continue
            try:
                await self._write_with_retry(snapshot)
            except ConcurrencyError as e:
                # a newer write already reached the store
                logger.warning("delivery_log_pending_superseded", record_id=record_id, error=str(e))
                self._pending.pop(record_id, None)
                continue
            except StoreUnavailableError as e:
                logger.warning("delivery_log_flush_failed", record_id=record_id, error=str(e))
                continue
            if self._pending.get(record_id) is snapshot:
                del self._pending[record_id]
            flushed += 1
        if flushed:
            logger.info("delivery_log_pending_flushed", count=flushed, remaining=len(self._pending))
        return flushed

    async def _write_with_retry(self, record: DeliveryRecord) -> DeliveryRecord:
        last_error: StoreUnavailableError | None = None
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return await self._repository.upsert(record)
            except StoreUnavailableError as e:
                last_error = e
                self._metrics.counter(WRITE_FAILURE_METRIC)
                logger.warning("delivery_log_write_failed", record_id=record.record_id,
                               attempt=attempt, error=str(e))
                if attempt < self._retry_attempts:
                    await self._sleep(self._retry_delay_seconds * attempt)
        assert last_error is not None
        raise last_error
