from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from identitycore.config import Settings
from identitycore.logging import get_logger, hash_identifier
from identitycore.service.accounts import normalize_email
from identitycore.service.audit import AuditEventType, AuditRecorder
from identitycore.service.errors import InvalidToken, PasswordTooWeak
from identitycore.service.notifier import (
    DeliveryOutcome,
    NotificationContext,
    NotificationKind,
    Notifier,
)
from identitycore.service.passwords import CredentialVerifier, PasswordPolicy
from identitycore.service.rate_limit import RateLimiter
from identitycore.service.stores import AccountStore, ResetTokenStore
from identitycore.storage.models import PasswordResetToken

logger = get_logger(__name__)


class IdentityResetStore(AccountStore, ResetTokenStore, Protocol):
    """Capabilities the password reset service needs from one backend."""


class PasswordResetService:
    """Single-use reset tokens gated by a per-email rate limit.

    ``initiate_password_reset`` behaves the same for known and unknown
    addresses: the limiter is charged either way and the external caller
    should always answer with success. Only ``RateLimitExceeded`` escapes.
    """

    def __init__(
        self,
        store: IdentityResetStore,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        limiter: RateLimiter,
        notifier: Notifier,
        settings: Settings,
        *,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.policy = policy
        self.limiter = limiter
        self.notifier = notifier
        self.settings = settings
        self.audit = audit or AuditRecorder()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for ``email``.

        Returns the token for internal use (tests, alternate delivery), or
        ``None`` when no account matches. Never hand the return value to the
        requester.
        """
        op = "initiate_password_reset"
        normalized = normalize_email(email)
        await self.limiter.hit(normalized, op=op)

        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(normalized))
            return None

        now = self._now()
        invalidated = self.store.invalidate_reset_tokens(account.id, now)
        record = self.store.create_reset_token(
            account.id,
            secrets.token_urlsafe(32),
            now + timedelta(minutes=self.settings.password_reset_token_ttl_minutes),
        )
        self.logger.info(
            "password_reset_initiated",
            account_id=account.id,
            reset_id=record.id,
            invalidated=invalidated,
        )
        await self._deliver(account.email, record)
        return record.token

    async def _deliver(self, recipient: str, record: PasswordResetToken) -> None:
        context = NotificationContext(
            kind=NotificationKind.PASSWORD_RESET, expires_at=record.expires_at
        )
        try:
            outcome = await asyncio.to_thread(
                self.notifier.deliver, recipient, record.token, context
            )
        except Exception as exc:
            self.logger.warning("password_reset_delivery_failed", reset_id=record.id, error=str(exc))
            outcome = DeliveryOutcome.failed(str(exc))
        try:
            self.store.record_reset_delivery(
                record.id,
                sent_at=self._now() if outcome.sent else None,
                error=outcome.error,
                retry_count=max(0, outcome.attempts - 1),
            )
        except Exception as exc:
            self.logger.warning(
                "password_reset_delivery_record_failed", reset_id=record.id, error=str(exc)
            )
        if not outcome.sent:
            self.logger.warning(
                "password_reset_not_delivered", reset_id=record.id, reason=outcome.error
            )

    async def reset_password(self, token: str, new_password: str) -> None:
        op = "reset_password"
        now = self._now()
        record = self.store.get_reset_token(token) if token else None
        # Absent, used and expired tokens are reported the same way
        if record is None or not record.is_valid(now):
            raise InvalidToken(op)
        if not self.policy.is_acceptable(new_password):
            raise PasswordTooWeak(op)

        account_id = self.store.redeem_reset_token(
            record.id, self.verifier.hash(new_password), now
        )
        if account_id is None:
            raise InvalidToken(op)
        self.logger.info("password_reset_completed", account_id=account_id)
        self.audit.record(AuditEventType.PASSWORD_RESET, success=True, account_id=account_id)

    def cleanup_expired_password_reset_tokens(self) -> int:
        removed = self.store.delete_expired_reset_tokens(self._now())
        self.logger.info("expired_reset_tokens_cleaned", count=removed)
        return removed

    async def cleanup_expired_rate_limits(self) -> int:
        removed = await self.limiter.cleanup_expired()
        self.logger.info("expired_rate_limits_cleaned", count=removed)
        return removed
