from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Permission:
    id: int
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        """The ``resource:action`` identifier used for matching."""
        return f"{self.resource}:{self.action}"


@dataclass
class Role:
    id: int
    name: str
    description: Optional[str] = None
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: int
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    roles: List[Role] = field(default_factory=list)

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]


class PermissionMode(str, Enum):
    GRANT = "grant"
    DENY = "deny"


@dataclass
class AccountPermission:
    """Direct grant or deny of a permission on one account."""

    account_id: int
    permission: Permission
    mode: PermissionMode = PermissionMode.GRANT

    @property
    def granted(self) -> bool:
        return self.mode == PermissionMode.GRANT


@dataclass
class Token:
    """Persisted refresh token. ``token`` is the opaque value handed out."""

    id: int
    token: str
    account_id: int
    expires_at: datetime
    family_id: str
    generation: int = 0
    mobile: bool = False
    identifier: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class InvitationState(str, Enum):
    PENDING = "pending"
    USED = "used"
    REVOKED = "revoked"


@dataclass
class InvitationToken:
    id: int
    token: str
    email: str
    role_id: int
    created_by: int
    expires_at: datetime
    state: InvitationState = InvitationState.PENDING
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    position: Optional[str] = None
    used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    email_error: Optional[str] = None
    email_retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_pending(self, now: Optional[datetime] = None) -> bool:
        """Pending in storage and not yet past its expiry."""
        return self.state == InvitationState.PENDING and not self.is_expired(now)


@dataclass
class PasswordResetToken:
    id: int
    account_id: int
    token: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    email_error: Optional[str] = None
    email_retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.used and not self.is_expired(now)


@dataclass
class RateLimitRecord:
    identifier: str
    window_start: datetime
    attempts: int
    window: timedelta

    @property
    def retry_at(self) -> datetime:
        return self.window_start + self.window

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.retry_at


@dataclass
class AuditEvent:
    event_type: str
    success: bool
    account_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountFilter:
    """Named filters for account listings. ``None`` means "do not filter"."""

    email: Optional[str] = None
    username: Optional[str] = None
    active: Optional[bool] = None
    role_name: Optional[str] = None
    limit: int = 100
    offset: int = 0
