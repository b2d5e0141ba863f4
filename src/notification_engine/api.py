"""
Notification Delivery Engine - REST API Endpoints.

FastAPI router exposing the event entry point, delivery log queries,
statistics and housekeeping jobs to the surrounding application.

Architecture Layer: Interface/Adapter
Principles: REST, Input Validation, Structured Responses
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
import structlog

from .domain.entities import DeliveryQuery, DeliveryRecord, DeliveryReport, DeliveryStatistics
from .domain.exceptions import (
    DeliveryDeferredError,
    ExhaustedRetriesError,
    NoTemplateError,
    NotConfiguredError,
)
from .domain.sweep import SweepReport
from .engine import DeliveryEngine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


class TriggerEventRequest(BaseModel):
    """API request to trigger a business event."""
    recipient: str = Field(..., min_length=3, max_length=254, description="Recipient e-mail address")
    payload: dict[str, Any] = Field(default_factory=dict, description="Template variables")

    model_config = {"json_schema_extra": {
        "example": {
            "recipient": "guest@example.com",
            "payload": {"bookingId": "LUX-1042", "guestName": "Asha", "propertyName": "Villa Azure"},
        }
    }}


class ToggleTriggerRequest(BaseModel):
    enabled: bool


class TriggerInfo(BaseModel):
    """Trigger rule information response."""
    event_name: str
    template_type: str
    enabled: bool
    advisory_delay_seconds: float
    name: str
    description: str


class TemplateInfo(BaseModel):
    """Template information response."""
    template_id: str
    template_type: str
    name: str
    recognized_variables: list[str]
    is_active: bool


class PurgeResponse(BaseModel):
    purged: int
    retention_days: int


def _get_engine() -> DeliveryEngine:
    """Dependency to get the delivery engine instance."""
    from .main import get_delivery_engine
    return get_delivery_engine()


@router.post("/events/{event_name}", response_model=DeliveryReport, status_code=status.HTTP_202_ACCEPTED)
async def trigger_event(
    event_name: str,
    request: TriggerEventRequest,
    engine: DeliveryEngine = Depends(_get_engine),
) -> DeliveryReport:
    """Trigger the notification bound to a business event."""
    logger.info("api_trigger_event", event_name=event_name, recipient=request.recipient)
    try:
        return await engine.orchestrator.trigger_event(event_name, request.recipient, request.payload)
    except NotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except NoTemplateError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    except ExhaustedRetriesError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(e), "record_id": e.record_id, "attempts": len(e.attempts)},
        ) from e
    except DeliveryDeferredError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(e), "record_id": e.record_id, "attempts": len(e.attempts)},
        ) from e


@router.get("/deliveries", response_model=list[DeliveryRecord])
async def list_deliveries(
    template_type: str | None = None,
    event_name: str | None = None,
    only_failed: bool = False,
    limit: int = Query(default=50, ge=1, le=1000),
    newest_first: bool = True,
    engine: DeliveryEngine = Depends(_get_engine),
) -> list[DeliveryRecord]:
    """Query the delivery log."""
    query = DeliveryQuery(
        template_type=template_type,
        event_name=event_name,
        only_failed=only_failed,
        limit=limit,
        newest_first=newest_first,
    )
    return await engine.repository.query(query)


@router.get("/deliveries/statistics", response_model=DeliveryStatistics)
async def delivery_statistics(engine: DeliveryEngine = Depends(_get_engine)) -> DeliveryStatistics:
    """Aggregate delivery statistics."""
    return await engine.repository.statistics()


@router.get("/deliveries/{record_id}", response_model=DeliveryRecord)
async def get_delivery(record_id: str, engine: DeliveryEngine = Depends(_get_engine)) -> DeliveryRecord:
    record = await engine.repository.get(record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Delivery record {record_id} not found")
    return record


@router.post("/deliveries/sweep", response_model=SweepReport)
async def run_sweep(engine: DeliveryEngine = Depends(_get_engine)) -> SweepReport:
    """Resume failed deliveries that still have attempt budget."""
    return await engine.sweep.sweep()


@router.post("/deliveries/purge", response_model=PurgeResponse)
async def purge_deliveries(engine: DeliveryEngine = Depends(_get_engine)) -> PurgeResponse:
    """Delete terminal records older than the retention window."""
    purged = await engine.purge_expired()
    return PurgeResponse(purged=purged, retention_days=engine.settings.delivery.retention_days)


@router.get("/triggers", response_model=list[TriggerInfo])
async def list_triggers(engine: DeliveryEngine = Depends(_get_engine)) -> list[TriggerInfo]:
    return [
        TriggerInfo(
            event_name=rule.event_name,
            template_type=rule.template_type,
            enabled=rule.enabled,
            advisory_delay_seconds=rule.advisory_delay.total_seconds(),
            name=rule.name,
            description=rule.description,
        )
        for rule in engine.triggers.list_rules()
    ]


@router.patch("/triggers/{event_name}", response_model=TriggerInfo)
async def toggle_trigger(
    event_name: str,
    request: ToggleTriggerRequest,
    engine: DeliveryEngine = Depends(_get_engine),
) -> TriggerInfo:
    """Enable or disable a trigger rule."""
    try:
        rule = engine.triggers.set_enabled(event_name, request.enabled)
    except NotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return TriggerInfo(
        event_name=rule.event_name,
        template_type=rule.template_type,
        enabled=rule.enabled,
        advisory_delay_seconds=rule.advisory_delay.total_seconds(),
        name=rule.name,
        description=rule.description,
    )


@router.delete("/triggers/{event_name}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_trigger(event_name: str, engine: DeliveryEngine = Depends(_get_engine)) -> None:
    """Remove a trigger rule; later events with that name are dropped."""
    if not engine.triggers.remove(event_name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"No trigger rule for event {event_name!r}")
    logger.info("api_trigger_removed", event_name=event_name)


@router.get("/templates", response_model=list[TemplateInfo])
async def list_templates(
    active_only: bool = True,
    engine: DeliveryEngine = Depends(_get_engine),
) -> list[TemplateInfo]:
    return [
        TemplateInfo(
            template_id=t.template_id,
            template_type=t.template_type,
            name=t.name,
            recognized_variables=sorted(t.recognized_variables),
            is_active=t.is_active,
        )
        for t in engine.templates.list_templates(active_only=active_only)
    ]


@router.get("/metrics")
async def metrics(engine: DeliveryEngine = Depends(_get_engine)) -> dict[str, Any]:
    return engine.metrics.get_all()
