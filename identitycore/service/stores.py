"""Store capabilities consumed by the identity services.

Each protocol is a narrow capability set. ``MemoryStore`` and
``PostgresStore`` implement all of them, but services only depend on the
slice they use so tests can substitute fakes. Methods documented as atomic
must complete as a single read-modify-write: a concurrent caller observes
either the state before or after, never a partial update.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from identitycore.storage.models import (
    Account,
    AccountFilter,
    AccountPermission,
    AuditEvent,
    InvitationState,
    InvitationToken,
    PasswordResetToken,
    Permission,
    PermissionMode,
    Role,
    Token,
)


class AccountStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def create_account(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account: ...

    def update_account(self, account: Account) -> Optional[Account]: ...

    def update_password(self, account_id: int, password_hash: str) -> bool: ...

    def set_account_active(self, account_id: int, active: bool) -> bool: ...

    def record_login(self, account_id: int, when: datetime) -> None: ...

    def list_accounts(self, filters: AccountFilter) -> List[Account]: ...

    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def update_role(self, role: Role) -> Optional[Role]: ...

    def delete_role(self, role_id: int) -> bool: ...

    def list_roles(self, name: Optional[str] = None) -> List[Role]: ...

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission: ...

    def get_permission(self, permission_id: int) -> Optional[Permission]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def update_permission(self, permission: Permission) -> Optional[Permission]: ...

    def delete_permission(self, permission_id: int) -> bool: ...

    def list_permissions(
        self, resource: Optional[str] = None, action: Optional[str] = None
    ) -> List[Permission]: ...

    def assign_permission_to_role(self, role_id: int, permission_id: int) -> None: ...

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool: ...

    def get_role_permissions(self, role_id: int) -> List[Permission]: ...

    def assign_role(self, account_id: int, role_id: int) -> None: ...

    def remove_role(self, account_id: int, role_id: int) -> bool: ...

    def list_account_roles(self, account_id: int) -> List[Role]: ...

    def set_account_permission(
        self, account_id: int, permission_id: int, mode: PermissionMode
    ) -> None: ...

    def remove_account_permission(self, account_id: int, permission_id: int) -> bool: ...

    def list_account_permissions(self, account_id: int) -> List[AccountPermission]: ...


class TokenStore(Protocol):
    def create_token(
        self,
        account_id: int,
        token: str,
        expires_at: datetime,
        *,
        family_id: str,
        generation: int = 0,
        mobile: bool = False,
        identifier: Optional[str] = None,
    ) -> Token: ...

    def get_token(self, token: str) -> Optional[Token]: ...

    def delete_token(self, token: str) -> bool: ...

    def delete_account_tokens(
        self, account_id: int, except_token: Optional[str] = None
    ) -> int: ...

    def delete_token_family(self, family_id: str) -> int: ...

    def latest_family_generation(self, family_id: str) -> Optional[int]: ...

    def list_account_tokens(self, account_id: int) -> List[Token]: ...

    def prune_account_tokens(self, account_id: int, keep: int) -> int: ...

    def rotate_token(
        self,
        old_token: str,
        *,
        token: str,
        expires_at: datetime,
        family_id: str,
        generation: int,
        mobile: bool = False,
        identifier: Optional[str] = None,
    ) -> Optional[Token]:
        """Atomically delete ``old_token`` and insert its successor.

        Returns ``None`` without writing anything when ``old_token`` is no
        longer stored.
        """
        ...

    def delete_expired_tokens(self, now: datetime) -> int: ...


class InvitationStore(Protocol):
    def create_invitation(
        self,
        email: str,
        token: str,
        role_id: int,
        created_by: int,
        expires_at: datetime,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        position: Optional[str] = None,
    ) -> InvitationToken: ...

    def get_invitation(self, invitation_id: int) -> Optional[InvitationToken]: ...

    def get_invitation_by_token(self, token: str) -> Optional[InvitationToken]: ...

    def update_invitation_state(
        self,
        invitation_id: int,
        state: InvitationState,
        *,
        when: datetime,
        expected: InvitationState = InvitationState.PENDING,
    ) -> bool:
        """Compare-and-set the state; ``False`` if it was not ``expected``."""
        ...

    def revoke_pending_invitations(self, email: str, when: datetime) -> int: ...

    def record_invitation_delivery(
        self,
        invitation_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None: ...

    def list_pending_invitations(self, now: datetime) -> List[InvitationToken]: ...

    def delete_expired_invitations(self, now: datetime) -> int: ...

    def redeem_invitation(
        self,
        invitation_id: int,
        *,
        email: str,
        password_hash: str,
        role_id: int,
        when: datetime,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Account]:
        """Atomically mark the invitation used and create its account.

        Returns ``None`` when the invitation is no longer pending. Raises
        ``ConstraintViolation`` (and leaves the invitation pending) when the
        account cannot be created.
        """
        ...


class ResetTokenStore(Protocol):
    def create_reset_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: int, when: datetime) -> bool: ...

    def invalidate_reset_tokens(self, account_id: int, when: datetime) -> int: ...

    def record_reset_delivery(
        self,
        token_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None: ...

    def redeem_reset_token(
        self, token_id: int, password_hash: str, when: datetime
    ) -> Optional[int]:
        """Atomically consume the token, store the new hash and drop sessions.

        Returns the account id, or ``None`` if the token was already used or
        has expired.
        """
        ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self, account_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


class IdentityStore(AccountStore, TokenStore, InvitationStore, ResetTokenStore, AuditStore, Protocol):
    """Everything a full backend provides."""
