from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, FrozenSet, List, Optional, Protocol

from identitycore.config import Settings
from identitycore.logging import get_logger, hash_identifier
from identitycore.service.accounts import normalize_email
from identitycore.service.audit import AuditEventType, AuditRecorder
from identitycore.service.errors import (
    AccountInactive,
    AccountNotFound,
    AuthError,
    InvalidCredentials,
    InvalidToken,
    PasswordTooWeak,
    TokenExpired,
    TokenNotFound,
)
from identitycore.service.passwords import CredentialVerifier, PasswordPolicy
from identitycore.service.permissions import PermissionResolver
from identitycore.service.stores import AccountStore, TokenStore
from identitycore.storage.errors import ConstraintViolation
from identitycore.storage.models import Account, Token

logger = get_logger(__name__)

DEFAULT_TOKEN_IDENTIFIER = "Service login"


class IdentityTokenStore(AccountStore, TokenStore, Protocol):
    """Capabilities the token service needs from one backend."""


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AccessClaims:
    account_id: int
    email: str
    username: Optional[str]
    roles: List[str]
    permissions: FrozenSet[str]
    expires_at: datetime
    jti: str


class TokenService:
    """Login, refresh-token rotation, logout and access-token validation.

    Access tokens are HS256 JWTs carrying a permission snapshot. Refresh
    tokens are HS256 JWTs wrapping an opaque value stored as a ``Token``
    record; the record is what makes a refresh token valid, and rotation
    replaces it atomically so a value can be redeemed once.
    """

    def __init__(
        self,
        store: IdentityTokenStore,
        resolver: PermissionResolver,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        settings: Settings,
        *,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.verifier = verifier
        self.policy = policy
        self.settings = settings
        self.audit = audit or AuditRecorder()
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _record(
        self,
        event_type: AuditEventType,
        *,
        success: bool,
        account_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[AuthError] = None,
    ) -> None:
        self.audit.record(
            event_type,
            success=success,
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            error=error.message if error else None,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        mobile: bool = False,
        identifier: Optional[str] = None,
    ) -> TokenPair:
        op = "login"
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized) if normalized else None
        error: Optional[AuthError] = None
        if account is None:
            self.verifier.burn(password)
            error = AccountNotFound(op)
        elif not account.active:
            error = AccountInactive(op)
        elif not self.verifier.verify(password, account.password_hash):
            error = InvalidCredentials(op)
        if error is not None:
            self.logger.warning(
                "login_failed",
                email_hash=hash_identifier(normalized),
                reason=error.error_code,
            )
            self._record(
                AuditEventType.LOGIN,
                success=False,
                account_id=account.id if account else None,
                ip_address=ip_address,
                user_agent=user_agent,
                error=error,
            )
            raise error

        now = self._now()
        try:
            # Make room for the new token within the per-account cap
            keep = max(0, self.settings.max_refresh_tokens_per_account - 1)
            self.store.prune_account_tokens(account.id, keep)
        except Exception as exc:
            self.logger.warning("token_prune_failed", account_id=account.id, error=str(exc))
        record = self.store.create_token(
            account.id,
            secrets.token_urlsafe(32),
            now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            family_id=str(uuid.uuid4()),
            generation=0,
            mobile=mobile,
            identifier=identifier or DEFAULT_TOKEN_IDENTIFIER,
        )
        try:
            self.store.record_login(account.id, now)
        except Exception as exc:
            self.logger.warning("last_login_update_failed", account_id=account.id, error=str(exc))
        pair = self._issue_pair(account, record, now)
        self.logger.info("login_succeeded", account_id=account.id, mobile=mobile)
        self._record(
            AuditEventType.LOGIN,
            success=True,
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    async def refresh_token(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        op = "refresh_token"
        claims = self._decode_refresh(refresh_token)
        if claims is None:
            self._record(
                AuditEventType.TOKEN_REFRESH,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error=InvalidToken(op),
            )
            raise InvalidToken(op)
        try:
            pair, account_id = self._rotate(op, claims["jti"])
        except AuthError as exc:
            event = (
                AuditEventType.TOKEN_EXPIRED
                if isinstance(exc, TokenExpired)
                else AuditEventType.TOKEN_REFRESH
            )
            self._record(
                event,
                success=False,
                account_id=_claim_account_id(claims),
                ip_address=ip_address,
                user_agent=user_agent,
                error=exc,
            )
            raise
        self._record(
            AuditEventType.TOKEN_REFRESH,
            success=True,
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    def _rotate(self, op: str, value: str) -> tuple[TokenPair, int]:
        now = self._now()
        current = self.store.get_token(value)
        if current is None:
            raise TokenNotFound(op)
        if current.is_expired(now):
            self.store.delete_token(value)
            raise TokenExpired(op)
        latest = self.store.latest_family_generation(current.family_id)
        if latest is not None and latest > current.generation:
            # An older member of the family came back: treat the family as stolen
            removed = self.store.delete_token_family(current.family_id)
            self.logger.warning(
                "refresh_token_reuse_detected",
                account_id=current.account_id,
                family_id=current.family_id,
                revoked=removed,
            )
            raise InvalidToken(op, "refresh token reuse detected")
        account = self.store.get_account(current.account_id)
        if account is None:
            raise AccountNotFound(op)
        if not account.active:
            raise AccountInactive(op)

        try:
            successor = self.store.rotate_token(
                value,
                token=secrets.token_urlsafe(32),
                expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
                family_id=current.family_id,
                generation=current.generation + 1,
                mobile=current.mobile,
                identifier=current.identifier,
            )
        except ConstraintViolation as exc:
            self.logger.error("token_rotation_failed", account_id=account.id, error=exc.message)
            raise InvalidToken(op, "token rotation failed") from exc
        if successor is None:
            # Another caller redeemed this value first
            raise TokenNotFound(op)
        self.logger.info(
            "refresh_token_rotated",
            account_id=account.id,
            family_id=successor.family_id,
            generation=successor.generation,
        )
        return self._issue_pair(account, successor, now), account.id

    async def logout(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Forget a refresh token. Never raises: logout is unconditional."""
        claims = self._decode_refresh(refresh_token, verify_expiry=False)
        if claims is None:
            self.logger.warning("logout_invalid_token")
            return
        account_id = _claim_account_id(claims)
        try:
            deleted = self.store.delete_token(claims["jti"])
        except Exception as exc:
            self.logger.warning("logout_delete_failed", account_id=account_id, error=str(exc))
            deleted = False
        self.logger.info("logout", account_id=account_id, token_found=deleted)
        self._record(
            AuditEventType.LOGOUT,
            success=True,
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def revoke_all_tokens(
        self, account_id: int, *, except_token: Optional[str] = None
    ) -> int:
        """Delete every refresh token of the account, optionally keeping one.

        ``except_token`` is the refresh token string handed to the client.
        """
        keep_value = None
        if except_token:
            claims = self._decode_refresh(except_token, verify_expiry=False)
            keep_value = claims["jti"] if claims else None
        revoked = self.store.delete_account_tokens(account_id, except_token=keep_value)
        self.logger.info("tokens_revoked", account_id=account_id, count=revoked)
        return revoked

    async def validate_token(self, access_token: str) -> Account:
        """Resolve an access token to its account, loaded with roles."""
        op = "validate_token"
        claims = self.decode_access_token(access_token)
        account = self.store.get_account(claims.account_id)
        if account is None:
            raise AccountNotFound(op)
        if not account.active:
            raise AccountInactive(op)
        return account

    def decode_access_token(self, access_token: str) -> AccessClaims:
        op = "validate_token"
        payload = self._decode_jwt(access_token, verify_expiry=False)
        if payload is None or payload.get("token_type") != "access":
            raise InvalidToken(op)
        if _is_expired(payload, time.time()):
            raise TokenExpired(op)
        account_id = _claim_account_id(payload)
        if account_id is None:
            raise InvalidToken(op)
        return AccessClaims(
            account_id=account_id,
            email=payload.get("email", ""),
            username=payload.get("username"),
            roles=list(payload.get("roles") or []),
            permissions=frozenset(payload.get("permissions") or []),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )

    async def change_password(
        self,
        account_id: int,
        current_password: str,
        new_password: str,
        *,
        keep_refresh_token: Optional[str] = None,
    ) -> None:
        """Replace the password after re-verifying the current one.

        Every refresh token of the account is revoked afterwards except
        ``keep_refresh_token`` when given.
        """
        op = "change_password"
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(op)
        if not self.verifier.verify(current_password, account.password_hash):
            self._record(
                AuditEventType.PASSWORD_CHANGE,
                success=False,
                account_id=account_id,
                error=InvalidCredentials(op),
            )
            raise InvalidCredentials(op)
        if not self.policy.is_acceptable(new_password):
            raise PasswordTooWeak(op)
        if not self.store.update_password(account_id, self.verifier.hash(new_password)):
            raise AccountNotFound(op)
        revoked = await self.revoke_all_tokens(account_id, except_token=keep_refresh_token)
        self.logger.info("password_changed", account_id=account_id, tokens_revoked=revoked)
        self._record(AuditEventType.PASSWORD_CHANGE, success=True, account_id=account_id)

    def get_active_tokens(self, account_id: int) -> List[Token]:
        now = self._now()
        return [t for t in self.store.list_account_tokens(account_id) if not t.is_expired(now)]

    def cleanup_expired_tokens(self) -> int:
        removed = self.store.delete_expired_tokens(self._now())
        self.logger.info("expired_tokens_cleaned", count=removed)
        return removed

    def _issue_pair(self, account: Account, record: Token, now: datetime) -> TokenPair:
        permissions = self.resolver.effective_permissions(account.id)
        roles = account.role_names or [r.name for r in self.store.list_account_roles(account.id)]
        access_expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(account.id),
            "email": account.email,
            "username": account.username,
            "roles": roles,
            "permissions": sorted(permissions),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_expires.timestamp()),
        }
        refresh_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(account.id),
            "token_type": "refresh",
            "jti": record.token,
            "fam": record.family_id,
            "exp": int(record.expires_at.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            access_expires_at=access_expires,
            refresh_expires_at=record.expires_at,
        )

    def _decode_refresh(
        self, refresh_token: str, *, verify_expiry: bool = False
    ) -> Optional[dict[str, Any]]:
        # Expiry of a refresh token is decided by its stored record
        payload = self._decode_jwt(refresh_token or "", verify_expiry=verify_expiry)
        if not payload or payload.get("token_type") != "refresh":
            return None
        if not isinstance(payload.get("jti"), str) or not payload["jti"]:
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, verify_expiry: bool = True
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "ignore")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if verify_expiry and _is_expired(payload, time.time()):
            return None
        return payload


def _is_expired(payload: dict[str, Any], now_ts: float) -> bool:
    return float(payload["exp"]) <= now_ts


def _claim_account_id(payload: dict[str, Any]) -> Optional[int]:
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
