from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Stable discriminant for every failure the identity core reports."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    USERNAME_ALREADY_EXISTS = "username_already_exists"
    PASSWORD_TOO_WEAK = "password_too_weak"
    PASSWORD_MISMATCH = "password_mismatch"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_NOT_FOUND = "token_not_found"
    INVITATION_NOT_FOUND = "invitation_not_found"
    INVITATION_EXPIRED = "invitation_expired"
    INVITATION_USED = "invitation_used"
    INVITATION_REVOKED = "invitation_revoked"
    INVITATION_NAME_REQUIRED = "invitation_name_required"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    ROLE_NOT_FOUND = "role_not_found"
    PERMISSION_NOT_FOUND = "permission_not_found"
    INVALID_EMAIL = "invalid_email"
    INVALID_USERNAME = "invalid_username"


class AuthError(Exception):
    """Base class for identity core failures.

    Each subclass fixes ``kind`` and a default message. ``op`` names the
    operation that failed so logs can tell ``login`` apart from ``refresh``
    without parsing messages. ``detail`` carries structured context for the
    caller that maps errors to responses.
    """

    kind: AuthErrorKind
    default_message: str = "authentication error"

    def __init__(
        self,
        op: str,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.op = op
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(f"{op}: {self.message}")

    @property
    def error_code(self) -> str:
        return self.kind.value

    def is_kind(self, kind: AuthErrorKind) -> bool:
        return self.kind == kind


class InvalidCredentials(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class AccountNotFound(AuthError):
    kind = AuthErrorKind.ACCOUNT_NOT_FOUND
    default_message = "account not found"


class AccountInactive(AuthError):
    kind = AuthErrorKind.ACCOUNT_INACTIVE
    default_message = "account is inactive"


class EmailAlreadyExists(AuthError):
    kind = AuthErrorKind.EMAIL_ALREADY_EXISTS
    default_message = "email already exists"


class UsernameAlreadyExists(AuthError):
    kind = AuthErrorKind.USERNAME_ALREADY_EXISTS
    default_message = "username already exists"


class PasswordTooWeak(AuthError):
    kind = AuthErrorKind.PASSWORD_TOO_WEAK
    default_message = "password does not meet the strength policy"


class PasswordMismatch(AuthError):
    kind = AuthErrorKind.PASSWORD_MISMATCH
    default_message = "passwords do not match"


class InvalidToken(AuthError):
    kind = AuthErrorKind.INVALID_TOKEN
    default_message = "invalid token"


class TokenExpired(AuthError):
    kind = AuthErrorKind.TOKEN_EXPIRED
    default_message = "token expired"


class TokenNotFound(AuthError):
    kind = AuthErrorKind.TOKEN_NOT_FOUND
    default_message = "token not found"


class InvitationNotFound(AuthError):
    kind = AuthErrorKind.INVITATION_NOT_FOUND
    default_message = "invitation not found"


class InvitationGone(AuthError):
    """Invitation exists but can no longer be used (expired, used or revoked)."""

    kind = AuthErrorKind.INVITATION_EXPIRED
    default_message = "invitation is no longer available"


class InvitationExpired(InvitationGone):
    kind = AuthErrorKind.INVITATION_EXPIRED
    default_message = "invitation expired"


class InvitationUsed(InvitationGone):
    kind = AuthErrorKind.INVITATION_USED
    default_message = "invitation already used"


class InvitationRevoked(InvitationGone):
    kind = AuthErrorKind.INVITATION_REVOKED
    default_message = "invitation revoked"


class InvitationNameRequired(AuthError):
    kind = AuthErrorKind.INVITATION_NAME_REQUIRED
    default_message = "first and last name are required"


class RoleNotFound(AuthError):
    kind = AuthErrorKind.ROLE_NOT_FOUND
    default_message = "role not found"


class PermissionNotFound(AuthError):
    kind = AuthErrorKind.PERMISSION_NOT_FOUND
    default_message = "permission not found"


class InvalidEmail(AuthError):
    kind = AuthErrorKind.INVALID_EMAIL
    default_message = "invalid email address"


class InvalidUsername(AuthError):
    kind = AuthErrorKind.INVALID_USERNAME
    default_message = "username must be 3-30 letters, digits, '.', '_' or '-'"


class RateLimitExceeded(AuthError):
    """Too many attempts for one identifier inside the current window."""

    kind = AuthErrorKind.RATE_LIMIT_EXCEEDED
    default_message = "too many attempts"

    def __init__(
        self,
        op: str,
        *,
        retry_at: datetime,
        attempts: int,
        message: Optional[str] = None,
    ) -> None:
        self.retry_at = retry_at
        self.attempts = attempts
        super().__init__(
            op,
            message,
            detail={"retry_at": retry_at.isoformat(), "attempts": attempts},
        )

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        """Whole seconds until the window reopens, rounded up and never negative."""
        current = now or datetime.now(timezone.utc)
        remaining = (self.retry_at - current).total_seconds()
        return max(0, math.ceil(remaining))


def mask_login_error(error: AuthError) -> AuthError:
    """Collapse ``AccountNotFound`` into ``InvalidCredentials``.

    Login reports the precise failure; callers that answer unauthenticated
    clients should pass login errors through here to avoid account
    enumeration.
    """
    if isinstance(error, AccountNotFound):
        return InvalidCredentials(error.op)
    return error


__all__ = [
    "AuthErrorKind",
    "AuthError",
    "InvalidCredentials",
    "AccountNotFound",
    "AccountInactive",
    "EmailAlreadyExists",
    "UsernameAlreadyExists",
    "PasswordTooWeak",
    "PasswordMismatch",
    "InvalidToken",
    "TokenExpired",
    "TokenNotFound",
    "InvitationNotFound",
    "InvitationGone",
    "InvitationExpired",
    "InvitationUsed",
    "InvitationRevoked",
    "InvitationNameRequired",
    "RoleNotFound",
    "PermissionNotFound",
    "InvalidEmail",
    "InvalidUsername",
    "RateLimitExceeded",
    "mask_login_error",
]
