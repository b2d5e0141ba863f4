"""
Unit tests for provider adapters and the provider chain.
"""
import asyncio
import json
from unittest.mock import AsyncMock, patch

import aiosmtplib
import httpx
import pytest

from notification_engine.config import BrevoSettings, SMTPSettings
from notification_engine.domain.exceptions import (
    ConfigurationError,
    ProviderError,
    ProviderErrorKind,
)
from notification_engine.domain.providers import (
    BrevoProvider,
    ProviderAdapter,
    ProviderChain,
    SMTPProvider,
    _sanitize_header,
    _validate_email_address,
)

from fakes import ScriptedProvider


def _brevo(handler, **settings) -> BrevoProvider:
    config = BrevoSettings(api_key="test-key", **settings)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BrevoProvider(config, client=client)


class TestHelpers:
    """Tests for header sanitizing and address validation."""

    def test_sanitize_header_strips_newlines(self):
        assert _sanitize_header("Hello\r\nBcc: evil@example.com") == "HelloBcc: evil@example.com"

    def test_sanitize_header_truncates(self):
        assert len(_sanitize_header("a" * 500, max_length=200)) == 200

    def test_validate_email(self):
        assert _validate_email_address("guest@example.com") is True
        assert _validate_email_address("not-an-email") is False
        assert _validate_email_address("") is False


class TestBrevoProvider:
    """Tests for the Brevo transactional e-mail adapter."""

    @pytest.mark.asyncio
    async def test_send_success(self):
        """Test a 201 response yields the provider message ID."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "<abc@smtp-relay.brevo.com>"})

        provider = _brevo(handler, reply_to="support@luxestaycations.in")
        outcome = await provider.send("guest@example.com", "Subject", "Body")

        assert outcome.success is True
        assert outcome.provider == "brevo"
        assert outcome.provider_message_id == "<abc@smtp-relay.brevo.com>"
        assert captured["url"] == "https://api.brevo.com/v3/smtp/email"
        assert captured["headers"]["api-key"] == "test-key"
        assert captured["body"]["to"] == [{"email": "guest@example.com"}]
        assert captured["body"]["subject"] == "Subject"
        assert captured["body"]["textContent"] == "Body"
        assert captured["body"]["replyTo"] == {"email": "support@luxestaycations.in"}
        assert "headers" not in captured["body"]
        assert "htmlContent" not in captured["body"]

    @pytest.mark.asyncio
    async def test_html_content_sent(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "m1"})

        await _brevo(handler).send("guest@example.com", "S", "Body", "<p>Body</p>")

        assert captured["body"]["htmlContent"] == "<p>Body</p>"
        assert captured["body"]["textContent"] == "Body"

    @pytest.mark.asyncio
    async def test_accepted_with_unreadable_body(self):
        """Test a 2xx response without JSON still counts as delivered."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, text="Created")

        outcome = await _brevo(handler).send("guest@example.com", "S", "B")

        assert outcome.success is True
        assert outcome.provider_message_id is None
        assert outcome.error_kind is None

    @pytest.mark.asyncio
    async def test_sandbox_header(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "m1"})

        provider = _brevo(handler, sandbox=True)
        await provider.send("guest@example.com", "S", "B")

        assert captured["body"]["headers"] == {"X-Sib-Sandbox": "drop"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,kind", [
        (401, ProviderErrorKind.AUTHENTICATION),
        (403, ProviderErrorKind.AUTHENTICATION),
        (400, ProviderErrorKind.REJECTED),
        (503, ProviderErrorKind.TRANSPORT),
    ])
    async def test_http_errors_classified(self, status_code, kind):
        """Test HTTP status codes map to error kinds."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"code": "x", "message": "nope"})

        outcome = await _brevo(handler).send("guest@example.com", "S", "B")

        assert outcome.success is False
        assert outcome.error_kind == kind
        assert "nope" in outcome.error_message
        assert isinstance(outcome.error, ProviderError)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await _brevo(handler).send("guest@example.com", "S", "B")

        assert outcome.error_kind == ProviderErrorKind.TRANSPORT
        assert isinstance(outcome.error.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        """Test an unconfigured key fails without a request."""
        handler_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            handler_calls.append(request)
            return httpx.Response(201, json={})

        provider = BrevoProvider(
            BrevoSettings(api_key=""),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        outcome = await provider.send("guest@example.com", "S", "B")

        assert outcome.error_kind == ProviderErrorKind.NOT_CONFIGURED
        assert handler_calls == []

    @pytest.mark.asyncio
    async def test_invalid_recipient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={})

        outcome = await _brevo(handler).send("not-an-email", "S", "B")
        assert outcome.error_kind == ProviderErrorKind.INVALID_RECIPIENT

    @pytest.mark.asyncio
    async def test_disabled_provider(self):
        provider = BrevoProvider(BrevoSettings(api_key="k", enabled=False))
        outcome = await provider.send("guest@example.com", "S", "B")
        assert outcome.error_kind == ProviderErrorKind.NOT_CONFIGURED


class TestSMTPProvider:
    """Tests for the SMTP adapter."""

    @pytest.fixture
    def smtp_settings(self):
        return SMTPSettings(host="smtp.test.com", port=587, username="test", password="secret")

    @pytest.mark.asyncio
    async def test_send_success(self, smtp_settings):
        """Test successful SMTP delivery."""
        provider = SMTPProvider(smtp_settings)

        with patch("aiosmtplib.SMTP") as mock_smtp:
            mock_instance = AsyncMock()
            mock_smtp.return_value.__aenter__.return_value = mock_instance
            mock_instance.send_message.return_value = ({}, "OK")

            outcome = await provider.send("guest@example.com", "Booking\r\nBcc: x@y.z", "Body")

        assert outcome.success is True
        assert outcome.provider == "smtp"
        assert outcome.provider_message_id.startswith("<")
        mock_instance.login.assert_awaited_once_with("test", "secret")
        message = mock_instance.send_message.call_args[0][0]
        assert message["To"] == "guest@example.com"
        assert "\n" not in str(message["Subject"])
        _, kwargs = mock_smtp.call_args
        assert kwargs["hostname"] == "smtp.test.com"
        assert kwargs["start_tls"] is True
        assert [part.get_content_type() for part in message.get_payload()] == ["text/plain"]

    @pytest.mark.asyncio
    async def test_html_alternative_part(self, smtp_settings):
        """Test an HTML body is attached after the plain text part."""
        provider = SMTPProvider(smtp_settings)

        with patch("aiosmtplib.SMTP") as mock_smtp:
            mock_instance = AsyncMock()
            mock_smtp.return_value.__aenter__.return_value = mock_instance

            outcome = await provider.send("guest@example.com", "S", "Body", "<p>Body</p>")

        assert outcome.success is True
        message = mock_instance.send_message.call_args[0][0]
        parts = message.get_payload()
        assert message.get_content_type() == "multipart/alternative"
        assert [part.get_content_type() for part in parts] == ["text/plain", "text/html"]
        assert parts[1].get_payload(decode=True).decode("utf-8") == "<p>Body</p>"

    @pytest.mark.asyncio
    async def test_authentication_failure(self, smtp_settings):
        provider = SMTPProvider(smtp_settings)

        with patch("aiosmtplib.SMTP") as mock_smtp:
            mock_instance = AsyncMock()
            mock_smtp.return_value.__aenter__.return_value = mock_instance
            mock_instance.login.side_effect = aiosmtplib.SMTPAuthenticationError(535, "bad credentials")

            outcome = await provider.send("guest@example.com", "S", "B")

        assert outcome.success is False
        assert outcome.error_kind == ProviderErrorKind.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_connection_failure(self, smtp_settings):
        provider = SMTPProvider(smtp_settings)

        with patch("aiosmtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.__aenter__.side_effect = aiosmtplib.SMTPConnectError("refused")

            outcome = await provider.send("guest@example.com", "S", "B")

        assert outcome.error_kind == ProviderErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, smtp_settings):
        outcome = await SMTPProvider(smtp_settings).send("bad address", "S", "B")
        assert outcome.error_kind == ProviderErrorKind.INVALID_RECIPIENT


class SlowProvider(ProviderAdapter):
    async def _deliver(self, recipient: str, subject: str, body: str, html_body: str | None) -> str | None:
        await asyncio.sleep(5)
        return "late"


class TestProviderTimeout:
    """Tests for the per-provider timeout."""

    @pytest.mark.asyncio
    async def test_timeout_reported_as_failure(self):
        """Test an expired call is a failed outcome with kind timeout."""
        outcome = await SlowProvider("slow", timeout_seconds=0.01).send("guest@example.com", "S", "B")

        assert outcome.success is False
        assert outcome.error_kind == ProviderErrorKind.TIMEOUT


class TestProviderChain:
    """Tests for ordered failover."""

    def test_empty_chain_rejected(self):
        with pytest.raises(ConfigurationError):
            ProviderChain([])

    @pytest.mark.asyncio
    async def test_primary_success_skips_secondary(self):
        """Test the secondary is not called when the primary succeeds."""
        primary = ScriptedProvider("primary", ["p-1"])
        secondary = ScriptedProvider("secondary", ["s-1"])

        result = await ProviderChain([primary, secondary]).dispatch("guest@example.com", "S", "B")

        assert result.success is True
        assert result.outcome.provider == "primary"
        assert result.errors == []
        assert secondary.calls == []

    @pytest.mark.asyncio
    async def test_fallback_to_secondary(self):
        """Test a primary failure falls over within the same pass."""
        primary = ScriptedProvider("primary", [ConnectionError("network down")])
        secondary = ScriptedProvider("secondary", ["s-1"])

        result = await ProviderChain([primary, secondary]).dispatch("guest@example.com", "S", "B")

        assert result.success is True
        assert result.outcome.provider == "secondary"
        assert len(result.errors) == 1
        assert result.errors[0].provider == "primary"
        assert result.errors[0].error_kind == ProviderErrorKind.TRANSPORT
        assert secondary.html_bodies == [None]

    @pytest.mark.asyncio
    async def test_html_body_reaches_every_provider(self):
        primary = ScriptedProvider("primary", [ProviderErrorKind.TIMEOUT])
        secondary = ScriptedProvider("secondary", ["s-1"])

        await ProviderChain([primary, secondary]).dispatch("guest@example.com", "S", "B", "<b>B</b>")

        assert primary.html_bodies == ["<b>B</b>"]
        assert secondary.html_bodies == ["<b>B</b>"]

    @pytest.mark.asyncio
    async def test_all_fail_reports_last_provider(self):
        primary = ScriptedProvider("primary", [ProviderErrorKind.TIMEOUT])
        secondary = ScriptedProvider("secondary", [ProviderErrorKind.REJECTED])
        tertiary = ScriptedProvider("tertiary", [ProviderErrorKind.TRANSPORT])

        result = await ProviderChain([primary, secondary, tertiary]).dispatch("guest@example.com", "S", "B")

        assert result.success is False
        assert result.outcome.provider == "tertiary"
        assert [e.provider for e in result.errors] == ["primary", "secondary", "tertiary"]

    def test_timeout_budget(self):
        chain = ProviderChain([
            ScriptedProvider("a", ["x"], timeout_seconds=10),
            ScriptedProvider("b", ["y"], timeout_seconds=30),
        ])
        assert chain.timeout_budget == 40
        assert chain.provider_names == ["a", "b"]
