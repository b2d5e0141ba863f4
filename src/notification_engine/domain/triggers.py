"""
Notification Delivery Engine - Trigger Map.

Maps business event names to the template type that notifies about them.
Lookups are plain dictionary reads; the map holds at most one rule per event.

Architecture Layer: Domain
Principles: Explicit Configuration, Fail Fast
"""
from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
import structlog

from .exceptions import DuplicateTriggerError, NotConfiguredError

logger = structlog.get_logger(__name__)


class TriggerRule(BaseModel):
    """
    Binding from an event name to a template type.

    ``advisory_delay`` is informational: the engine reports it but never
    waits on it. ``conditions`` restrict the rule to payloads carrying the
    given key/value pairs.
    """
    event_name: str = Field(..., min_length=1, max_length=100)
    template_type: str = Field(..., min_length=1, max_length=100)
    enabled: bool = Field(default=True)
    advisory_delay: timedelta = Field(default=timedelta(0))
    name: str = Field(default="")
    description: str = Field(default="")
    conditions: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def matches(self, payload: dict[str, Any]) -> bool:
        """Check the rule's conditions against an event payload."""
        return all(
            key in payload and str(payload[key]) == value
            for key, value in self.conditions.items()
        )


class TriggerMap:
    """Registry of trigger rules keyed by event name."""

    def __init__(self, rules: list[TriggerRule] | None = None) -> None:
        self._rules: dict[str, TriggerRule] = {}
        for rule in rules or []:
            self.register(rule)

    @classmethod
    def with_defaults(cls) -> TriggerMap:
        return cls(default_trigger_rules())

    @classmethod
    def from_file(cls, path: str | Path) -> TriggerMap:
        """
        Build a trigger map from a JSON file holding a list of rules.

        Each entry takes the TriggerRule fields; ``advisory_delay`` is given
        in seconds or as an ISO 8601 duration.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        rules = [TriggerRule.model_validate(entry) for entry in raw]
        logger.info("trigger_rules_loaded", path=str(path), rule_count=len(rules))
        return cls(rules)

    def register(self, rule: TriggerRule) -> None:
        if rule.event_name in self._rules:
            raise DuplicateTriggerError(rule.event_name)
        self._rules[rule.event_name] = rule
        logger.debug("trigger_registered", event_name=rule.event_name,
                     template_type=rule.template_type, enabled=rule.enabled)

    def remove(self, event_name: str) -> bool:
        """Drop the rule for an event. Returns False if none was registered."""
        removed = self._rules.pop(event_name, None) is not None
        if removed:
            logger.info("trigger_removed", event_name=event_name)
        return removed

    def set_enabled(self, event_name: str, enabled: bool) -> TriggerRule:
        """Enable or disable a rule, returning the updated rule."""
        rule = self._rules.get(event_name)
        if rule is None:
            raise NotConfiguredError(event_name)
        updated = rule.model_copy(update={"enabled": enabled})
        self._rules[event_name] = updated
        logger.info("trigger_toggled", event_name=event_name, enabled=enabled)
        return updated

    def resolve(self, event_name: str) -> TriggerRule:
        """
        Resolve the enabled rule for an event.

        Raises:
            NotConfiguredError: If the event is unmapped or its rule is disabled
        """
        rule = self._rules.get(event_name)
        if rule is None:
            raise NotConfiguredError(event_name)
        if not rule.enabled:
            raise NotConfiguredError(event_name, reason="trigger rule disabled")
        return rule

    def list_rules(self) -> list[TriggerRule]:
        return list(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, event_name: object) -> bool:
        return event_name in self._rules


def default_trigger_rules() -> list[TriggerRule]:
    """Trigger rules for the booking platform's transactional events."""
    return [
        TriggerRule(
            event_name="booking_created",
            template_type="booking_confirmation",
            name="Booking Confirmation",
            description="Send confirmation email when booking is created",
        ),
        TriggerRule(
            event_name="booking_reminder_24h",
            template_type="booking_confirmation",
            advisory_delay=timedelta(hours=24),
            name="Booking Reminder (24h)",
            description="Send reminder 24 hours before check-in",
        ),
        TriggerRule(
            event_name="booking_reminder_1h",
            template_type="booking_confirmation",
            advisory_delay=timedelta(hours=1),
            name="Booking Reminder (1h)",
            description="Send reminder 1 hour before check-in",
        ),
        TriggerRule(
            event_name="booking_cancelled",
            template_type="booking_cancellation",
            name="Booking Cancellation",
            description="Send cancellation email when booking is cancelled",
        ),
        TriggerRule(
            event_name="partner_request_created",
            template_type="partner_request",
            name="Partner Request Confirmation",
            description="Send confirmation when partner request is submitted",
        ),
        TriggerRule(
            event_name="consultation_request_created",
            template_type="consultation_request",
            name="Consultation Request Confirmation",
            description="Send confirmation when consultation request is submitted",
        ),
        TriggerRule(
            event_name="special_request_created",
            template_type="special_request",
            name="Special Request Confirmation",
            description="Send confirmation when special request is submitted",
        ),
        TriggerRule(
            event_name="contact_form_submitted",
            template_type="contact_form",
            name="Contact Form Thank You",
            description="Send thank you email when contact form is submitted",
        ),
    ]
