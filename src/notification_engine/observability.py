"""Notification Delivery Engine - Structured logging, correlation ids and metrics."""
from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Callable

import structlog

from .config import EngineSettings

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Start a fresh correlation scope and return its ID."""
    cid = str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def configure_logging(settings: EngineSettings) -> None:
    """Configure structured logging with structlog."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_service_context(settings.service.name, settings.service.env.value),
        _add_correlation_id,
    ]
    if settings.observability.log_format == "json":
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.service.log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _add_service_context(service_name: str, environment: str) -> Callable[..., Any]:
    """Processor to add service context to logs."""
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict["service"] = service_name
        event_dict["environment"] = environment
        return event_dict
    return processor


def _add_correlation_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Processor to add correlation ID to logs."""
    cid = _correlation_id.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


class MetricsRegistry:
    """In-memory counters and histograms for the delivery engine.

    One registry is created per engine and handed to the components that
    record into it.
    """

    def __init__(self, prefix: str = "notification_engine") -> None:
        self._prefix = prefix
        self._counters: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    def _make_key(self, name: str, labels: dict[str, str] | None = None) -> str:
        """Create unique key for metric with labels."""
        key = f"{self._prefix}_{name}"
        if labels:
            label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
            key = f"{key}{{{label_str}}}"
        return key

    def counter(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + value

    def histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Record a histogram observation."""
        key = self._make_key(name, labels)
        self._histograms.setdefault(key, []).append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self._counters.get(self._make_key(name, labels), 0)

    def get_all(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        return {
            "counters": dict(self._counters),
            "histograms": {k: self._histogram_stats(v) for k, v in self._histograms.items()},
        }

    def _histogram_stats(self, values: list[float]) -> dict[str, float]:
        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0}
        return {
            "count": len(values), "sum": sum(values),
            "min": min(values), "max": max(values),
            "avg": sum(values) / len(values),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        self._histograms.clear()
