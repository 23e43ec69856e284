"""Tests for notification delivery over webhook and SMTP."""

import hashlib
import hmac
import json
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from accountcore.service.email import EmailService, redact_address
from accountcore.service.notifications import (
    EmailNotificationDispatcher,
    NotificationEvent,
    Notifier,
    WebhookNotificationDispatcher,
)


def _webhook(handler, secret="hook-secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher("https://events.example.com/hook", secret=secret, client=client)


class TestWebhookDispatcher:
    async def test_posts_signed_envelope(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["signature"] = request.headers.get("X-Accountcore-Signature")
            return httpx.Response(202)

        dispatcher = _webhook(handler)
        await dispatcher.dispatch(NotificationEvent.WELCOME, {"account_id": "acct-1", "email": "a@example.com"})

        envelope = json.loads(seen["body"])
        assert envelope["name"] == "auth/user.registered"
        assert envelope["data"]["account_id"] == "acct-1"
        assert "ts" in envelope
        expected = hmac.new(b"hook-secret", seen["body"], hashlib.sha256).hexdigest()
        assert seen["signature"] == f"sha256={expected}"

    async def test_unsigned_without_secret(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            return httpx.Response(200)

        await _webhook(handler, secret=None).dispatch(NotificationEvent.ACCOUNT_LOCKED, {"account_id": "a"})
        assert "X-Accountcore-Signature" not in seen["headers"]

    async def test_error_status_raises(self):
        dispatcher = _webhook(lambda request: httpx.Response(503))
        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.dispatch(NotificationEvent.PASSWORD_RESET, {"account_id": "a"})


class TestNotifier:
    async def test_failures_are_contained(self):
        dispatcher = _webhook(lambda request: httpx.Response(500))
        notifier = Notifier(dispatcher)

        notifier.notify(NotificationEvent.WELCOME, {"account_id": "acct-1"})
        await notifier.drain()

    async def test_without_dispatcher_is_noop(self):
        notifier = Notifier(None)
        notifier.notify(NotificationEvent.WELCOME, {"account_id": "acct-1"})
        await notifier.drain()

    def test_dropped_outside_event_loop(self, dispatcher):
        notifier = Notifier(dispatcher)
        notifier.notify(NotificationEvent.WELCOME, {"account_id": "acct-1"})
        assert dispatcher.events == []


class TestEmailDispatcher:
    async def test_routes_events_to_templates(self):
        email = MagicMock(spec=EmailService)
        dispatcher = EmailNotificationDispatcher(email, verification_ttl_hours=48, reset_ttl_minutes=30)

        await dispatcher.dispatch(
            NotificationEvent.VERIFICATION_EMAIL, {"email": "a@example.com", "token": "tok"}
        )
        await dispatcher.dispatch(NotificationEvent.PASSWORD_RESET, {"email": "a@example.com", "token": "rt"})
        await dispatcher.dispatch(NotificationEvent.ACCOUNT_LOCKED, {"email": "a@example.com", "retry_after_seconds": 900})

        email.send_email_verification.assert_called_once_with("a@example.com", "tok", ttl_hours=48)
        email.send_password_reset.assert_called_once_with("a@example.com", "rt", ttl_minutes=30)
        email.send_account_locked.assert_called_once_with("a@example.com", retry_after_seconds=900)


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self):
        service = EmailService()
        with patch("accountcore.service.email.smtplib.SMTP") as smtp:
            assert service.send_welcome("alice@example.com", "Alice")
        smtp.assert_not_called()

    def test_sends_with_starttls(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
            base_url="https://market.example.com/",
        )
        with patch("accountcore.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            assert service.send_password_reset("alice@example.com", "reset-token")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        message = server.send_message.call_args.args[0]
        assert message["To"] == "alice@example.com"
        assert "https://market.example.com/reset-password?token=reset-token" in message.get_body(("plain",)).get_content()

    def test_smtp_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch("accountcore.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.send_message.side_effect = smtplib.SMTPException("boom")
            assert not service.send_two_factor_enabled("alice@example.com")

    def test_redact_address(self):
        assert redact_address("alice@example.com") == "al***@example.com"
        assert redact_address("nonsense") == "redacted"
