from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from identitycore.config import Settings
from identitycore.logging import get_logger, hash_identifier
from identitycore.service.accounts import (
    clean_optional,
    is_valid_email,
    is_valid_username,
    normalize_email,
    translate_constraint,
)
from identitycore.service.errors import (
    EmailAlreadyExists,
    InvalidEmail,
    InvalidUsername,
    InvitationExpired,
    InvitationGone,
    InvitationNameRequired,
    InvitationNotFound,
    InvitationRevoked,
    InvitationUsed,
    PasswordMismatch,
    PasswordTooWeak,
    RoleNotFound,
    UsernameAlreadyExists,
)
from identitycore.service.notifier import (
    DeliveryOutcome,
    NotificationContext,
    NotificationKind,
    Notifier,
)
from identitycore.service.passwords import CredentialVerifier, PasswordPolicy
from identitycore.service.permissions import PermissionResolver
from identitycore.service.stores import AccountStore, InvitationStore
from identitycore.storage.errors import ConstraintViolation
from identitycore.storage.models import Account, InvitationState, InvitationToken

logger = get_logger(__name__)


class IdentityInvitationStore(AccountStore, InvitationStore, Protocol):
    """Capabilities the invitation service needs from one backend."""


@dataclass
class InvitationDetails:
    """What an unauthenticated caller may see before accepting."""

    email: str
    role_id: int
    role_name: Optional[str]
    expires_at: datetime
    invited_by: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    position: Optional[str] = None


@dataclass
class InvitationAcceptance:
    password: str
    confirm_password: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def gone_error(op: str, invitation: InvitationToken, now: datetime) -> Optional[InvitationGone]:
    """The gone-style error for an invitation that cannot be used, else ``None``."""
    if invitation.state == InvitationState.USED:
        return InvitationUsed(op)
    if invitation.state == InvitationState.REVOKED:
        return InvitationRevoked(op)
    if invitation.is_expired(now):
        return InvitationExpired(op)
    return None


class InvitationService:
    """Issue, validate, accept, resend and revoke invitation tokens.

    Whether the creator may hand out the requested role is decided by the
    caller before calling in.
    """

    def __init__(
        self,
        store: IdentityInvitationStore,
        resolver: PermissionResolver,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.verifier = verifier
        self.policy = policy
        self.notifier = notifier
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_invitation(
        self,
        email: str,
        role_id: int,
        creator_id: int,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        position: Optional[str] = None,
    ) -> InvitationToken:
        op = "create_invitation"
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise InvalidEmail(op)
        if self.store.get_account_by_email(normalized):
            raise EmailAlreadyExists(op)
        role = self.resolver.get_role(role_id)
        if role is None:
            raise RoleNotFound(op)

        now = self._now()
        superseded = self.store.revoke_pending_invitations(normalized, now)
        try:
            invitation = self.store.create_invitation(
                normalized,
                secrets.token_urlsafe(32),
                role.id,
                creator_id,
                now + timedelta(hours=self.settings.invitation_ttl_hours),
                first_name=clean_optional(first_name),
                last_name=clean_optional(last_name),
                position=clean_optional(position),
            )
        except ConstraintViolation as exc:
            raise translate_constraint(op, exc) from exc
        self.logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            email_hash=hash_identifier(normalized),
            role=role.name,
            created_by=creator_id,
            superseded=superseded,
        )
        return await self._deliver(invitation, role.name, retry_count=0)

    async def _deliver(
        self, invitation: InvitationToken, role_name: Optional[str], *, retry_count: int
    ) -> InvitationToken:
        context = NotificationContext(
            kind=NotificationKind.INVITATION,
            expires_at=invitation.expires_at,
            role_name=role_name,
            first_name=invitation.first_name,
            last_name=invitation.last_name,
        )
        try:
            # SMTP retries sleep between attempts; keep them off the event loop
            outcome = await asyncio.to_thread(
                self.notifier.deliver, invitation.email, invitation.token, context
            )
        except Exception as exc:
            self.logger.warning(
                "invitation_delivery_failed", invitation_id=invitation.id, error=str(exc)
            )
            outcome = DeliveryOutcome.failed(str(exc))

        sent_at = self._now() if outcome.sent else None
        try:
            self.store.record_invitation_delivery(
                invitation.id,
                sent_at=sent_at,
                error=outcome.error,
                retry_count=retry_count,
            )
        except Exception as exc:
            self.logger.warning(
                "invitation_delivery_record_failed", invitation_id=invitation.id, error=str(exc)
            )
        if not outcome.sent:
            self.logger.warning(
                "invitation_not_delivered", invitation_id=invitation.id, reason=outcome.error
            )
        invitation.email_sent_at = sent_at
        invitation.email_error = outcome.error
        invitation.email_retry_count = retry_count
        return invitation

    def _lookup(self, op: str, token: str) -> InvitationToken:
        invitation = self.store.get_invitation_by_token(token) if token else None
        if invitation is None:
            raise InvitationNotFound(op)
        gone = gone_error(op, invitation, self._now())
        if gone is not None:
            raise gone
        return invitation

    async def validate_invitation(self, token: str) -> InvitationDetails:
        invitation = self._lookup("validate_invitation", token)
        role = self.resolver.get_role(invitation.role_id)
        return InvitationDetails(
            email=invitation.email,
            role_id=invitation.role_id,
            role_name=role.name if role else None,
            expires_at=invitation.expires_at,
            invited_by=invitation.created_by,
            first_name=invitation.first_name,
            last_name=invitation.last_name,
            position=invitation.position,
        )

    async def accept_invitation(
        self, token: str, registration: InvitationAcceptance
    ) -> Account:
        op = "accept_invitation"
        invitation = self._lookup(op, token)
        if registration.password != registration.confirm_password:
            raise PasswordMismatch(op)
        if not self.policy.is_acceptable(registration.password):
            raise PasswordTooWeak(op)
        first_name = clean_optional(registration.first_name) or invitation.first_name
        last_name = clean_optional(registration.last_name) or invitation.last_name
        if self.settings.invitation_require_names and not (first_name and last_name):
            raise InvitationNameRequired(op)
        username = clean_optional(registration.username)
        if username is not None:
            if not is_valid_username(username):
                raise InvalidUsername(op)
            if self.store.get_account_by_username(username):
                raise UsernameAlreadyExists(op)

        # Email uniqueness is enforced by the store inside the redeem unit
        password_hash = self.verifier.hash(registration.password)
        now = self._now()
        try:
            account = self.store.redeem_invitation(
                invitation.id,
                email=invitation.email,
                password_hash=password_hash,
                role_id=invitation.role_id,
                when=now,
                username=username,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            raise translate_constraint(op, exc) from exc
        if account is None:
            # Lost the race: report whatever state the invitation is in now
            current = self.store.get_invitation(invitation.id)
            if current is None:
                raise InvitationNotFound(op)
            raise gone_error(op, current, now) or InvitationUsed(op)
        self.logger.info(
            "invitation_accepted",
            invitation_id=invitation.id,
            account_id=account.id,
            role_id=invitation.role_id,
        )
        return account

    def _require_pending(self, op: str, invitation_id: int) -> InvitationToken:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None:
            raise InvitationNotFound(op)
        gone = gone_error(op, invitation, self._now())
        if gone is not None:
            raise gone
        return invitation

    async def resend_invitation(self, invitation_id: int, actor_id: int) -> InvitationToken:
        invitation = self._require_pending("resend_invitation", invitation_id)
        role = self.resolver.get_role(invitation.role_id)
        self.logger.info(
            "invitation_resent",
            invitation_id=invitation.id,
            actor_id=actor_id,
            retry_count=invitation.email_retry_count + 1,
        )
        return await self._deliver(
            invitation,
            role.name if role else None,
            retry_count=invitation.email_retry_count + 1,
        )

    async def revoke_invitation(self, invitation_id: int, actor_id: int) -> None:
        op = "revoke_invitation"
        self._require_pending(op, invitation_id)
        if not self.store.update_invitation_state(
            invitation_id, InvitationState.REVOKED, when=self._now()
        ):
            current = self.store.get_invitation(invitation_id)
            if current is None:
                raise InvitationNotFound(op)
            raise gone_error(op, current, self._now()) or InvitationUsed(op)
        self.logger.info("invitation_revoked", invitation_id=invitation_id, actor_id=actor_id)

    def list_pending_invitations(self) -> List[InvitationToken]:
        return self.store.list_pending_invitations(self._now())

    def cleanup_expired_invitations(self) -> int:
        removed = self.store.delete_expired_invitations(self._now())
        self.logger.info("expired_invitations_cleaned", count=removed)
        return removed
