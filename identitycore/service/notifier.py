from __future__ import annotations

import smtplib
import ssl
import time
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence, Tuple

from identitycore.config import Settings
from identitycore.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    INVITATION = "invitation"
    PASSWORD_RESET = "password_reset"


@dataclass
class NotificationContext:
    kind: NotificationKind
    expires_at: datetime
    role_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class DeliveryOutcome:
    sent: bool
    error: Optional[str] = None
    attempts: int = 1

    @classmethod
    def failed(cls, reason: str, attempts: int = 1) -> "DeliveryOutcome":
        return cls(sent=False, error=reason, attempts=attempts)


class Notifier(Protocol):
    def deliver(
        self, recipient: str, token: str, context: NotificationContext
    ) -> DeliveryOutcome: ...


class EmailNotifier:
    """SMTP delivery for invitation and password reset messages.

    Without an SMTP host the message is logged instead of sent (dev mode).
    Failed sends are retried with the configured backoff.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Identity",
        base_url: Optional[str] = None,
        max_attempts: int = 3,
        retry_backoff: Sequence[float] = (1.0, 5.0, 15.0),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = list(retry_backoff)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            max_attempts=settings.notifier_max_attempts,
            retry_backoff=settings.notifier_retry_backoff_seconds,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def deliver(
        self, recipient: str, token: str, context: NotificationContext
    ) -> DeliveryOutcome:
        subject, html_body, text_body = self._render(token, context)
        error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            error = self._send_email(recipient, subject, html_body, text_body)
            if error is None:
                return DeliveryOutcome(sent=True, attempts=attempt)
            if attempt < self.max_attempts and self.retry_backoff:
                delay = self.retry_backoff[min(attempt - 1, len(self.retry_backoff) - 1)]
                logger.info(
                    "email_retry_scheduled",
                    to=redact_email(recipient),
                    kind=context.kind.value,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                self._sleep(delay)
        return DeliveryOutcome.failed(error or "delivery failed", attempts=self.max_attempts)

    def _render(self, token: str, context: NotificationContext) -> Tuple[str, str, str]:
        expires = context.expires_at.strftime("%Y-%m-%d %H:%M UTC")
        if context.kind == NotificationKind.INVITATION:
            link = f"{self.base_url}/invitations/accept?token={token}"
            greeting = f"Hello {context.first_name}," if context.first_name else "Hello,"
            role = context.role_name or "member"
            subject = f"You have been invited to join {self.from_name}"
            lines = [
                greeting,
                f"You have been invited to join as {role}. Use the link below to set up your account:",
                link,
                f"The invitation expires on {expires}.",
            ]
        else:
            link = f"{self.base_url}/password/reset?token={token}"
            subject = "Reset your password"
            lines = [
                "We received a request to reset your password. Use the link below to choose a new one:",
                link,
                f"This link expires on {expires}.",
                "If you didn't request this, you can safely ignore this email.",
            ]
        text_body = "\n\n".join(lines + ["---", self.from_name]) + "\n"
        paragraphs = "".join(
            f'<p><a href="{line}">{line}</a></p>' if line == link else f"<p>{line}</p>"
            for line in lines
        )
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head><body>'
            f"{paragraphs}<p>{self.from_name}</p></body></html>"
        )
        return subject, html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> Optional[str]:
        """Send an email via SMTP.

        Returns None if sent successfully, otherwise a short failure reason.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:80] if text_body else html_body[:80],
            )
            return None

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return None

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return "smtp authentication failed"
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
            return "recipient refused"
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return f"smtp error: {type(e).__name__}"
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return f"connection failed: {type(e).__name__}"
