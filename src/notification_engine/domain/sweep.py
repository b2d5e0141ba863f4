"""
Notification Delivery Engine - Retry Sweep.

Batch job that resumes failed delivery records which still have attempt
budget. Each record is claimed through an optimistic write before it is
resumed, so concurrent sweeps and live deliveries never run repetitions for
the same record at the same time.

Architecture Layer: Application
Principles: Idempotent Batch Processing, Optimistic Concurrency
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from pydantic import BaseModel, Field
import structlog

from ..infrastructure.log_writer import DeliveryLogWriter
from ..infrastructure.repository import ConcurrencyError, StoreUnavailableError
from ..observability import MetricsRegistry, new_correlation_id
from .entities import FinalOutcome
from .exceptions import DeliveryDeferredError, ExhaustedRetriesError
from .orchestrator import DeliveryOrchestrator

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SweepReport(BaseModel):
    """Summary of one sweep run."""
    flushed: int = 0
    resumed: list[str] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)
    exhausted: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class RetrySweep:
    """Re-enters the orchestrator for resumable records."""

    def __init__(
        self,
        orchestrator: DeliveryOrchestrator,
        log_writer: DeliveryLogWriter,
        metrics: MetricsRegistry | None = None,
        batch_size: int = 100,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._orchestrator = orchestrator
        self._writer = log_writer
        self._repository = log_writer.repository
        self._metrics = metrics or MetricsRegistry()
        self._batch_size = batch_size
        self._clock = clock

    async def sweep(self) -> SweepReport:
        """
        Resume every eligible record once.

        Returns:
            SweepReport listing resumed, succeeded, exhausted and skipped IDs
        """
        new_correlation_id()
        report = SweepReport()
        policy = self._orchestrator.policy
        now = self._clock()

        report.flushed = await self._writer.flush_pending(now)
        candidates = await self._repository.find_resumable(
            policy.max_attempts, now, limit=self._batch_size
        )
        logger.info("retry_sweep_started", candidates=len(candidates), flushed=report.flushed)

        for record in candidates:
            record.claim(str(uuid4()), now, policy.claim_ttl)
            if record.final_outcome == FinalOutcome.EXHAUSTED:
                # only reachable when max_attempts was raised since the record was written
                record.reopen()
                logger.info("delivery_reopened", record_id=record.record_id,
                            attempts=len(record.attempts), max_attempts=policy.max_attempts)
            try:
                claimed = await self._repository.upsert(record)
            except ConcurrencyError:
                logger.info("retry_sweep_claim_skipped", record_id=record.record_id)
                report.skipped.append(record.record_id)
                continue
            except StoreUnavailableError as e:
                logger.warning("retry_sweep_claim_failed", record_id=record.record_id, error=str(e))
                report.skipped.append(record.record_id)
                continue

            report.resumed.append(claimed.record_id)
            self._metrics.counter("sweep_records_resumed")
            try:
                await self._orchestrator.resume(claimed)
            except ExhaustedRetriesError:
                report.exhausted.append(claimed.record_id)
            except DeliveryDeferredError:
                report.skipped.append(claimed.record_id)
            else:
                report.succeeded.append(claimed.record_id)

        logger.info("retry_sweep_completed", resumed=len(report.resumed),
                    succeeded=len(report.succeeded), exhausted=len(report.exhausted),
                    skipped=len(report.skipped))
        return report
