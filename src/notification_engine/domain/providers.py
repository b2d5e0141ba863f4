"""
Notification Delivery Engine - Delivery Providers.

Provider adapters hide every transport detail behind a single async
``send(recipient, subject, body, html_body)`` capability that reports a
ProviderOutcome and never raises. Adapters are arranged in an ordered
ProviderChain that fails over from one provider to the next within a single
pass.

Architecture Layer: Domain/Infrastructure
Principles: Strategy Pattern, Dependency Inversion, Async I/O
"""
from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid

import aiosmtplib
import httpx
from pydantic import BaseModel, Field
import structlog

from ..config import BrevoSettings, SMTPSettings
from .exceptions import ConfigurationError, ProviderError, ProviderErrorKind

logger = structlog.get_logger(__name__)


# Newlines and control characters enable header injection
_HEADER_INJECTION_PATTERN = re.compile(r'[\r\n\x00\x0b\x0c]')
_EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def _sanitize_header(value: str, max_length: int = 998) -> str:
    """
    Sanitize a string for safe use in email headers.

    Args:
        value: The header value to sanitize.
        max_length: Maximum length for the header value (RFC 5322 recommends 998).

    Returns:
        Sanitized string safe for use in email headers.
    """
    if not value:
        return ""
    sanitized = _HEADER_INJECTION_PATTERN.sub('', value)
    return sanitized[:max_length].strip()


def _validate_email_address(email: str) -> bool:
    if not email or len(email) > 254:  # RFC 5321 max length
        return False
    return _EMAIL_PATTERN.match(email) is not None


class ProviderOutcome(BaseModel):
    """Result of one provider call."""
    provider: str
    success: bool
    provider_message_id: str | None = None
    error_kind: ProviderErrorKind | None = None
    error_message: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: ProviderError | None = Field(default=None, exclude=True, repr=False)

    model_config = {"arbitrary_types_allowed": True}


class ProviderAdapter(ABC):
    """
    Abstract base class for delivery providers.

    Implements Template Method pattern: ``send`` bounds the call with the
    provider timeout and translates failures, subclasses implement
    ``_deliver``.
    """

    def __init__(self, name: str, timeout_seconds: float, enabled: bool = True) -> None:
        self._name = name
        self._timeout_seconds = timeout_seconds
        self._enabled = enabled

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
    ) -> ProviderOutcome:
        """
        Send one message through this provider.

        Args:
            recipient: Target e-mail address
            subject: Rendered subject line
            body: Rendered plain text body
            html_body: Optional rendered HTML body

        Returns:
            ProviderOutcome describing success or the classified failure
        """
        if not self._enabled:
            return self._failure(ProviderError(
                self._name, ProviderErrorKind.NOT_CONFIGURED, "provider disabled"))
        try:
            message_id = await asyncio.wait_for(
                self._deliver(recipient, subject, body, html_body),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            error = ProviderError(
                self._name, ProviderErrorKind.TIMEOUT,
                f"no response within {self._timeout_seconds}s",
            )
            error.__cause__ = e
            return self._failure(error)
        except ProviderError as e:
            return self._failure(e)
        except OSError as e:
            error = ProviderError(self._name, ProviderErrorKind.TRANSPORT, str(e) or type(e).__name__)
            error.__cause__ = e
            return self._failure(error)
        except Exception as e:
            error = ProviderError(self._name, ProviderErrorKind.UNKNOWN, str(e) or type(e).__name__)
            error.__cause__ = e
            return self._failure(error)

        logger.info("provider_delivered", provider=self._name, recipient=recipient,
                    provider_message_id=message_id)
        return ProviderOutcome(provider=self._name, success=True, provider_message_id=message_id)

    def _failure(self, error: ProviderError) -> ProviderOutcome:
        logger.warning("provider_delivery_failed", provider=self._name,
                       error_kind=error.error_kind.value, error=error.message)
        return ProviderOutcome(
            provider=self._name,
            success=False,
            error_kind=error.error_kind,
            error_message=error.message,
            error=error,
        )

    @abstractmethod
    async def _deliver(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None,
    ) -> str | None:
        """Deliver the message, returning the provider's message ID.

        Raises ProviderError for classified failures.
        """

    async def aclose(self) -> None:
        """Release transport resources."""


class BrevoProvider(ProviderAdapter):
    """Primary provider using the Brevo transactional e-mail API."""

    def __init__(self, settings: BrevoSettings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__("brevo", settings.timeout_seconds, settings.enabled)
        self._settings = settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
        return self._client

    def _build_payload(self, recipient: str, subject: str, body: str, html_body: str | None) -> dict:
        payload: dict = {
            "sender": {"email": self._settings.sender_email, "name": self._settings.sender_name},
            "to": [{"email": recipient}],
            "subject": subject,
            "textContent": body,
        }
        if html_body:
            payload["htmlContent"] = html_body
        if self._settings.reply_to:
            payload["replyTo"] = {"email": self._settings.reply_to}
        if self._settings.tags:
            payload["tags"] = list(self._settings.tags)
        if self._settings.sandbox:
            payload["headers"] = {"X-Sib-Sandbox": "drop"}
        return payload

    async def _deliver(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None,
    ) -> str | None:
        if not self._settings.api_key:
            raise ProviderError(self.name, ProviderErrorKind.NOT_CONFIGURED, "api key missing")
        if not _validate_email_address(recipient):
            raise ProviderError(self.name, ProviderErrorKind.INVALID_RECIPIENT,
                                f"invalid email address: {recipient[:50]}")

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._settings.api_url.rstrip('/')}/smtp/email",
                json=self._build_payload(recipient, subject, body, html_body),
                headers={"api-key": self._settings.api_key, "accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self._classify_status(e.response) from e
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, ProviderErrorKind.TIMEOUT, str(e) or "request timed out") from e
        except httpx.TransportError as e:
            raise ProviderError(self.name, ProviderErrorKind.TRANSPORT, str(e) or type(e).__name__) from e

        # 2xx means accepted; the message ID is optional
        try:
            data = response.json() if response.content else {}
        except ValueError:
            logger.warning("brevo_response_unparseable", status_code=response.status_code)
            return None
        return data.get("messageId") if isinstance(data, dict) else None

    def _classify_status(self, response: httpx.Response) -> ProviderError:
        code = response.status_code
        try:
            data = response.json()
            detail = data.get("message", "") if isinstance(data, dict) else ""
        except ValueError:
            detail = response.text[:200]
        message = f"HTTP {code}: {detail}" if detail else f"HTTP {code}"
        if code in (401, 403):
            return ProviderError(self.name, ProviderErrorKind.AUTHENTICATION, message)
        if 400 <= code < 500:
            return ProviderError(self.name, ProviderErrorKind.REJECTED, message)
        return ProviderError(self.name, ProviderErrorKind.TRANSPORT, message)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class SMTPProvider(ProviderAdapter):
    """Secondary provider using plain SMTP."""

    def __init__(self, settings: SMTPSettings) -> None:
        super().__init__("smtp", settings.timeout_seconds, settings.enabled)
        self._settings = settings

    def _build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None,
    ) -> MIMEMultipart:
        sanitized_subject = _sanitize_header(subject, max_length=200)
        sanitized_from_name = _sanitize_header(self._settings.from_name, max_length=100)
        sanitized_from_email = _sanitize_header(self._settings.from_email)

        message = MIMEMultipart("alternative")
        message["Subject"] = Header(sanitized_subject, "utf-8")
        message["From"] = formataddr((sanitized_from_name, sanitized_from_email))
        message["To"] = recipient
        domain = sanitized_from_email.rpartition("@")[2] or None
        message["Message-ID"] = make_msgid(domain=domain)
        message.attach(MIMEText(body, "plain", "utf-8"))
        if html_body:
            message.attach(MIMEText(html_body, "html", "utf-8"))
        return message

    async def _deliver(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None,
    ) -> str | None:
        sanitized_recipient = _sanitize_header(recipient)
        if not _validate_email_address(sanitized_recipient):
            raise ProviderError(self.name, ProviderErrorKind.INVALID_RECIPIENT,
                                f"invalid email address: {recipient[:50]}")
        message = self._build_message(sanitized_recipient, subject, body, html_body)

        try:
            async with aiosmtplib.SMTP(
                hostname=self._settings.host,
                port=self._settings.port,
                use_tls=self._settings.use_tls,
                start_tls=self._settings.start_tls,
                timeout=self._settings.timeout_seconds,
            ) as smtp:
                if self._settings.username:
                    await smtp.login(self._settings.username, self._settings.password)
                await smtp.send_message(message)
        except aiosmtplib.SMTPTimeoutError as e:
            raise ProviderError(self.name, ProviderErrorKind.TIMEOUT, str(e)) from e
        except aiosmtplib.SMTPAuthenticationError as e:
            raise ProviderError(self.name, ProviderErrorKind.AUTHENTICATION, str(e)) from e
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise ProviderError(self.name, ProviderErrorKind.INVALID_RECIPIENT, str(e)) from e
        except (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected, OSError) as e:
            raise ProviderError(self.name, ProviderErrorKind.TRANSPORT, str(e)) from e
        except aiosmtplib.SMTPResponseException as e:
            raise ProviderError(self.name, ProviderErrorKind.REJECTED, str(e)) from e
        return message["Message-ID"]


@dataclass
class ChainResult:
    """Deciding outcome of one pass through the chain."""
    outcome: ProviderOutcome
    errors: list[ProviderError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome.success


class ProviderChain:
    """
    Ordered list of providers tried in turn until one succeeds.

    Adding a provider means appending an adapter; the pass itself is one
    loop over the list.
    """

    def __init__(self, providers: list[ProviderAdapter]) -> None:
        if not providers:
            raise ConfigurationError("Provider chain requires at least one provider")
        self._providers = list(providers)
        logger.info("provider_chain_initialized", providers=self.provider_names)

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    @property
    def timeout_budget(self) -> float:
        """Worst-case duration of one pass."""
        return sum(p.timeout_seconds for p in self._providers)

    async def dispatch(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
    ) -> ChainResult:
        """Run one pass: stop at the first success, else report the last failure."""
        errors: list[ProviderError] = []
        outcome: ProviderOutcome | None = None
        for provider in self._providers:
            outcome = await provider.send(recipient, subject, body, html_body)
            if outcome.success:
                return ChainResult(outcome=outcome, errors=errors)
            if outcome.error is not None:
                errors.append(outcome.error)
        assert outcome is not None
        return ChainResult(outcome=outcome, errors=errors)

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()
