"""
Notification Delivery Engine.

Turns business events into rendered transactional e-mail, dispatches it
through an ordered chain of providers with bounded retry, and keeps an
auditable delivery log.
"""
from .config import EngineSettings
from .engine import DeliveryEngine, build_delivery_engine

__version__ = "1.0.0"

__all__ = [
    "EngineSettings",
    "DeliveryEngine",
    "build_delivery_engine",
]
