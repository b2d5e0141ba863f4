"""
Notification Delivery Engine - Template Management.

Notification template definitions, the placeholder renderer and the registry
that resolves a template type to its authoritative active template.

Placeholders use the ``{{name}}`` syntax, where the name is any text without
``}}``. Only names a template declares as recognized are substituted
(missing ones become empty); unknown placeholders are left untouched. System
variables such as ``currentDate`` and ``companyName`` are always available
and cannot be overridden by callers.

Every template renders a plain text body and, when it has an HTML pattern,
an HTML body. A template without a text pattern gets its text body derived
from the rendered HTML.

Architecture Layer: Domain
Principles: Registry Pattern, Immutability, Deterministic Rendering
"""
from __future__ import annotations

import html
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator
import structlog

from ..config import OrganizationSettings
from .exceptions import NoTemplateError, RenderError

logger = structlog.get_logger(__name__)

_PLACEHOLDER_PATTERN = re.compile(r"\{\{(.*?)\}\}")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")

SYSTEM_VARIABLES = frozenset({
    "currentDate",
    "currentTime",
    "companyName",
    "companyEmail",
    "companyPhone",
    "companyWebsite",
})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def strip_html(markup: str) -> str:
    """Plain text fallback for an HTML body: tags dropped, whitespace collapsed."""
    text = _TAG_PATTERN.sub("", markup)
    return html.unescape(_WHITESPACE_PATTERN.sub(" ", text)).strip()


class NotificationTemplate(BaseModel):
    """
    Notification template definition.

    Among active templates sharing a ``template_type`` the one created last
    is authoritative. At least one of ``body_pattern`` and
    ``html_body_pattern`` must be given.
    """
    template_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique template ID")
    template_type: str = Field(..., min_length=1, max_length=100, description="Template type key")
    name: str = Field(..., min_length=1, max_length=100, description="Template name")
    description: str = Field(default="", max_length=500)
    subject_pattern: str = Field(..., min_length=1, description="Subject line pattern")
    body_pattern: str = Field(default="", description="Plain text body pattern")
    html_body_pattern: str | None = Field(default=None, description="HTML body pattern")
    recognized_variables: set[str] = Field(default_factory=set)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("recognized_variables", mode="before")
    @classmethod
    def ensure_set(cls, v: Any) -> set[str]:
        if v is None:
            return set()
        return set(v) if isinstance(v, (list, tuple, set, frozenset)) else {v}

    @model_validator(mode="after")
    def require_body(self) -> NotificationTemplate:
        if not self.body_pattern and not self.html_body_pattern:
            raise ValueError("Template needs a text or an HTML body pattern")
        return self


class RenderedMessage(BaseModel):
    """Result of template rendering."""
    template_type: str
    subject: str
    body: str
    html_body: str | None = None
    missing_variables: list[str] = Field(default_factory=list)


class TemplateRenderer:
    """
    Single-pass placeholder renderer.

    Substituted values are never re-scanned, so a payload value containing
    ``{{...}}`` is emitted literally. The clock is injectable so that date
    and time system variables are reproducible.
    """

    def __init__(
        self,
        organization: OrganizationSettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._organization = organization or OrganizationSettings()
        self._clock = clock

    def system_variables(self) -> dict[str, str]:
        """Values available to every template, in the organization's local time."""
        offset = timezone(timedelta(minutes=self._organization.utc_offset_minutes))
        now = self._clock().astimezone(offset)
        hour = now.hour % 12 or 12
        meridiem = "AM" if now.hour < 12 else "PM"
        return {
            "currentDate": f"{now:%B} {now.day}, {now.year}",
            "currentTime": f"{hour}:{now.minute:02d} {meridiem}",
            "companyName": self._organization.name,
            "companyEmail": self._organization.email,
            "companyPhone": self._organization.phone,
            "companyWebsite": self._organization.website,
        }

    def render(
        self,
        template: NotificationTemplate,
        variables: dict[str, Any],
    ) -> RenderedMessage:
        """
        Render subject and body of a template.

        Args:
            template: The template to render
            variables: Caller supplied values keyed by placeholder name

        Returns:
            RenderedMessage; never raises for missing or unknown variables
        """
        system = self.system_variables()
        missing: list[str] = []

        def lookup(name: str) -> str | None:
            if name in system:
                return system[name]
            if name not in template.recognized_variables:
                return None
            value = variables.get(name)
            if value is None:
                if name not in missing:
                    missing.append(name)
                return ""
            return str(value)

        def substitute(match: re.Match[str]) -> str:
            value = lookup(match.group(1))
            return match.group(0) if value is None else value

        def substitute_html(match: re.Match[str]) -> str:
            value = lookup(match.group(1))
            return match.group(0) if value is None else html.escape(value)

        subject = _PLACEHOLDER_PATTERN.sub(substitute, template.subject_pattern)
        html_body = None
        if template.html_body_pattern:
            html_body = _PLACEHOLDER_PATTERN.sub(substitute_html, template.html_body_pattern)
        if template.body_pattern:
            body = _PLACEHOLDER_PATTERN.sub(substitute, template.body_pattern)
        else:
            body = strip_html(html_body or "")

        if missing:
            degraded = RenderError(template.template_type, missing)
            logger.warning(
                "template_render_degraded",
                template_type=template.template_type,
                template_id=template.template_id,
                missing=missing,
                error=str(degraded),
            )
        return RenderedMessage(
            template_type=template.template_type,
            subject=subject,
            body=body,
            html_body=html_body,
            missing_variables=missing,
        )


class TemplateRegistry:
    """
    Registry of notification templates keyed by type.

    Seeds the built-in default templates unless told otherwise.
    """

    def __init__(
        self,
        renderer: TemplateRenderer | None = None,
        register_defaults: bool = True,
    ) -> None:
        self._renderer = renderer or TemplateRenderer()
        self._templates: dict[str, NotificationTemplate] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        if register_defaults:
            for template in default_templates():
                self.register(template)
        logger.info("template_registry_initialized", template_count=len(self._templates))

    @property
    def renderer(self) -> TemplateRenderer:
        return self._renderer

    def register(self, template: NotificationTemplate) -> None:
        """Register a template, replacing any template with the same ID."""
        self._templates[template.template_id] = template
        self._sequence[template.template_id] = self._next_sequence
        self._next_sequence += 1
        logger.info("template_registered", template_id=template.template_id,
                    template_type=template.template_type, is_active=template.is_active)

    def get(self, template_id: str) -> NotificationTemplate | None:
        return self._templates.get(template_id)

    def deactivate(self, template_id: str) -> bool:
        """Mark a template inactive. Returns False if it does not exist."""
        template = self._templates.get(template_id)
        if template is None:
            return False
        self._templates[template_id] = template.model_copy(update={"is_active": False})
        logger.info("template_deactivated", template_id=template_id,
                    template_type=template.template_type)
        return True

    def resolve(self, template_type: str) -> NotificationTemplate:
        """
        Resolve the authoritative active template for a type.

        Raises:
            NoTemplateError: If no active template of that type exists
        """
        candidates = [
            t for t in self._templates.values()
            if t.template_type == template_type and t.is_active
        ]
        if not candidates:
            raise NoTemplateError(template_type)
        return max(candidates, key=lambda t: (t.created_at, self._sequence[t.template_id]))

    def render(self, template: NotificationTemplate, variables: dict[str, Any]) -> RenderedMessage:
        return self._renderer.render(template, variables)

    def list_templates(self, active_only: bool = True) -> list[NotificationTemplate]:
        """List registered templates in registration order."""
        templates = sorted(self._templates.values(), key=lambda t: self._sequence[t.template_id])
        if active_only:
            return [t for t in templates if t.is_active]
        return templates


_SIGNATURE = """
Contact us at {{companyEmail}} or {{companyPhone}}

Best regards,
{{companyName}} Team"""

_HTML_SIGNATURE = (
    "<p style='color:#666;font-size:12px;margin-top:20px;'>"
    "Contact us at {{companyEmail}} or {{companyPhone}}<br>"
    "Best regards,<br>{{companyName}} Team</p>"
)


def _html_layout(heading: str, greeting: str, content: str) -> str:
    return (
        "<div style='font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px;'>"
        f"<h2 style='color:#8B4513;text-align:center;'>{heading}</h2>"
        f"<p>Dear {greeting},</p>{content}{_HTML_SIGNATURE}</div>"
    )


def _html_details(rows: list[tuple[str, str]]) -> str:
    cells = "".join(
        f"<tr><td style='padding:8px;border:1px solid #ddd;'><strong>{label}</strong></td>"
        f"<td style='padding:8px;border:1px solid #ddd;'>{value}</td></tr>"
        for label, value in rows
    )
    return f"<table style='width:100%;border-collapse:collapse;'>{cells}</table>"


def default_templates() -> list[NotificationTemplate]:
    """Built-in templates for the booking platform's transactional mail."""
    return [
        NotificationTemplate(
            template_type="booking_confirmation",
            name="Booking Confirmation",
            subject_pattern="Booking Confirmed - {{bookingId}} | {{companyName}}",
            body_pattern="""Booking Confirmed - {{bookingId}}

Dear {{guestName}},

Thank you for choosing {{companyName}}! Your booking has been confirmed.

Booking Details:
- Booking ID: {{bookingId}}
- Property: {{propertyName}}
- Check-in: {{checkIn}}
- Check-out: {{checkOut}}
- Total Amount: {{totalAmount}}

You will receive a detailed itinerary 24 hours before your check-in.
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Booking Confirmed - {{bookingId}}", "{{guestName}}",
                "<p>Thank you for choosing {{companyName}}! Your booking has been confirmed.</p>"
                + _html_details([
                    ("Booking ID", "{{bookingId}}"),
                    ("Property", "{{propertyName}}"),
                    ("Check-in", "{{checkIn}}"),
                    ("Check-out", "{{checkOut}}"),
                    ("Total Amount", "{{totalAmount}}"),
                ])
                + "<p>You will receive a detailed itinerary 24 hours before your check-in.</p>",
            ),
            recognized_variables={"bookingId", "guestName", "propertyName",
                                  "checkIn", "checkOut", "totalAmount"},
        ),
        NotificationTemplate(
            template_type="booking_cancellation",
            name="Booking Cancellation",
            subject_pattern="Booking Cancelled - {{bookingId}} | {{companyName}}",
            body_pattern="""Booking Cancelled - {{bookingId}}

Dear {{guestName}},

Your booking has been cancelled as requested.

Cancellation Details:
- Booking ID: {{bookingId}}
- Property: {{propertyName}}
- Refund Amount: {{refundAmount}}
- Reason: {{cancellationReason}}

We hope to welcome you back in the future!
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Booking Cancelled - {{bookingId}}", "{{guestName}}",
                "<p>Your booking has been cancelled as requested.</p>"
                + _html_details([
                    ("Booking ID", "{{bookingId}}"),
                    ("Property", "{{propertyName}}"),
                    ("Refund Amount", "{{refundAmount}}"),
                    ("Reason", "{{cancellationReason}}"),
                ])
                + "<p>We hope to welcome you back in the future!</p>",
            ),
            recognized_variables={"bookingId", "guestName", "propertyName",
                                  "refundAmount", "cancellationReason"},
        ),
        NotificationTemplate(
            template_type="partner_request",
            name="Partner Request Confirmation",
            subject_pattern="Partner Application Received - {{businessName}} | {{companyName}}",
            body_pattern="""Partner Application Received

Dear {{contactName}},

Thank you for your interest in partnering with {{companyName}}.

Application Details:
- Business: {{businessName}}
- Email: {{email}}
- Property Type: {{propertyType}}
- Location: {{location}}

Our partnership specialist will contact you within 24 hours.
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Partner Application Received", "{{contactName}}",
                "<p>Thank you for your interest in partnering with {{companyName}}.</p>"
                + _html_details([
                    ("Business", "{{businessName}}"),
                    ("Email", "{{email}}"),
                    ("Property Type", "{{propertyType}}"),
                    ("Location", "{{location}}"),
                ])
                + "<p>Our partnership specialist will contact you within 24 hours.</p>",
            ),
            recognized_variables={"businessName", "contactName", "email",
                                  "propertyType", "location"},
        ),
        NotificationTemplate(
            template_type="consultation_request",
            name="Consultation Request Confirmation",
            subject_pattern="Consultation Confirmed - {{requestId}} | {{companyName}}",
            body_pattern="""Consultation Confirmed - {{requestId}}

Dear {{name}},

We have received your consultation request.

Request Details:
- Request ID: {{requestId}}
- Email: {{email}}
- Property Type: {{propertyType}}
- Preferred Date: {{preferredDate}}
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Consultation Confirmed - {{requestId}}", "{{name}}",
                "<p>We have received your consultation request.</p>"
                + _html_details([
                    ("Request ID", "{{requestId}}"),
                    ("Email", "{{email}}"),
                    ("Property Type", "{{propertyType}}"),
                    ("Preferred Date", "{{preferredDate}}"),
                ]),
            ),
            recognized_variables={"requestId", "name", "email",
                                  "propertyType", "preferredDate"},
        ),
        NotificationTemplate(
            template_type="special_request",
            name="Special Request Confirmation",
            subject_pattern="Special Request Received - {{requestId}} | {{companyName}}",
            body_pattern="""Special Request Received - {{requestId}}

Dear {{guestName}},

We have received your special request for booking {{bookingId}}:

{{requestDetails}}

Our concierge team will get back to you shortly.
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Special Request Received - {{requestId}}", "{{guestName}}",
                "<p>We have received your special request for booking {{bookingId}}:</p>"
                "<blockquote>{{requestDetails}}</blockquote>"
                "<p>Our concierge team will get back to you shortly.</p>",
            ),
            recognized_variables={"requestId", "guestName", "bookingId", "requestDetails"},
        ),
        NotificationTemplate(
            template_type="contact_form",
            name="Contact Form Thank You",
            subject_pattern="Thank You for Contacting Us - {{subject}} | {{companyName}}",
            body_pattern="""Thank You for Contacting Us - {{subject}}

Dear {{name}},

We received your message sent from {{email}}:

{{message}}

Our travel specialists will review your inquiry within 24 hours.
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "Thank You for Contacting Us - {{subject}}", "{{name}}",
                "<p>We received your message sent from {{email}}:</p>"
                "<blockquote>{{message}}</blockquote>"
                "<p>Our travel specialists will review your inquiry within 24 hours.</p>",
            ),
            recognized_variables={"name", "email", "subject", "message"},
        ),
        NotificationTemplate(
            template_type="loyalty_earned",
            name="Loyalty Points Earned",
            subject_pattern="You Earned {{points}} Loyalty Points! | {{companyName}}",
            body_pattern="""Dear {{userName}},

You earned {{points}} loyalty points for {{description}}.
Your balance is now {{totalPoints}} points.
""" + _SIGNATURE,
            html_body_pattern=_html_layout(
                "You Earned {{points}} Loyalty Points!", "{{userName}}",
                "<p>You earned <strong>{{points}}</strong> loyalty points for {{description}}.</p>"
                "<p>Your balance is now <strong>{{totalPoints}}</strong> points.</p>",
            ),
            recognized_variables={"userName", "points", "totalPoints", "description"},
        ),
    ]
