"""Tests for email delivery of invitations and reset links."""

import smtplib
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from identitycore.config import Settings
from identitycore.service.notifier import (
    EmailNotifier,
    NotificationContext,
    NotificationKind,
)

EXPIRES = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)


def invitation_context(**overrides):
    data = {"kind": NotificationKind.INVITATION, "expires_at": EXPIRES, "role_name": "staff"}
    data.update(overrides)
    return NotificationContext(**data)


@pytest.fixture
def delays():
    return []


@pytest.fixture
def smtp_notifier(delays):
    return EmailNotifier(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
        base_url="https://app.example.com/",
        max_attempts=3,
        retry_backoff=[1.0, 5.0],
        sleep=delays.append,
    )


class TestDevMode:
    """Without SMTP configuration messages are logged only."""

    def test_unconfigured_reports_sent(self):
        notifier = EmailNotifier()

        with patch("identitycore.service.notifier.smtplib.SMTP") as smtp:
            outcome = notifier.deliver("a@x.com", "tok", invitation_context())

        assert not notifier.is_configured
        assert outcome.sent is True
        assert outcome.attempts == 1
        smtp.assert_not_called()

    def test_from_settings(self):
        notifier = EmailNotifier.from_settings(
            Settings(smtp_host="mail", smtp_user="u", notifier_max_attempts=0)
        )

        assert notifier.is_configured
        assert notifier.from_email == "u"
        assert notifier.max_attempts == 1


class TestRendering:
    def test_invitation_links_token(self, smtp_notifier):
        subject, html_body, text_body = smtp_notifier._render(
            "abc", invitation_context(first_name="Ada")
        )

        assert "invited" in subject
        assert "https://app.example.com/invitations/accept?token=abc" in text_body
        assert "Hello Ada," in text_body
        assert "as staff" in text_body
        assert "2030-05-01 12:00 UTC" in html_body

    def test_reset_links_token(self, smtp_notifier):
        context = NotificationContext(kind=NotificationKind.PASSWORD_RESET, expires_at=EXPIRES)

        subject, html_body, text_body = smtp_notifier._render("xyz", context)

        assert subject == "Reset your password"
        assert '<a href="https://app.example.com/password/reset?token=xyz">' in html_body


class TestSmtpDelivery:
    """Tests for delivery and retry with a patched SMTP client."""

    def test_sends_with_starttls_and_login(self, smtp_notifier):
        with patch("identitycore.service.notifier.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            outcome = smtp_notifier.deliver("a@x.com", "tok", invitation_context())

        assert outcome.sent is True
        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        from_addr, to_addr, _ = server.sendmail.call_args[0]
        assert (from_addr, to_addr) == ("noreply@example.com", "a@x.com")

    def test_retries_then_succeeds(self, smtp_notifier, delays):
        with patch("identitycore.service.notifier.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.sendmail.side_effect = [smtplib.SMTPServerDisconnected("bye"), None]
            outcome = smtp_notifier.deliver("a@x.com", "tok", invitation_context())

        assert outcome.sent is True
        assert outcome.attempts == 2
        assert delays == [1.0]

    def test_gives_up_after_max_attempts(self, smtp_notifier, delays):
        with patch("identitycore.service.notifier.smtplib.SMTP") as smtp:
            smtp.side_effect = OSError("connection refused")
            outcome = smtp_notifier.deliver("a@x.com", "tok", invitation_context())

        assert outcome.sent is False
        assert outcome.attempts == 3
        assert outcome.error == "connection failed: OSError"
        assert delays == [1.0, 5.0]

    def test_recipient_refused(self, smtp_notifier):
        with patch("identitycore.service.notifier.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({"a@x.com": (550, b"no")})
            outcome = smtp_notifier.deliver("a@x.com", "tok", invitation_context())

        assert outcome.error == "recipient refused"

    def test_implicit_tls(self, delays):
        notifier = EmailNotifier(
            smtp_host="smtp.example.com",
            smtp_port=465,
            from_email="noreply@example.com",
            smtp_use_tls=False,
            sleep=delays.append,
        )

        with patch("identitycore.service.notifier.smtplib.SMTP_SSL") as smtp_ssl:
            server = MagicMock()
            smtp_ssl.return_value.__enter__.return_value = server
            outcome = notifier.deliver("a@x.com", "tok", invitation_context())

        assert outcome.sent is True
        server.login.assert_not_called()
        server.sendmail.assert_called_once()
