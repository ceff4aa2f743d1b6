from __future__ import annotations

import re
from typing import FrozenSet, List, Optional

from identitycore.config import Settings
from identitycore.logging import get_logger, hash_identifier
from identitycore.service.errors import (
    AccountNotFound,
    EmailAlreadyExists,
    InvalidEmail,
    InvalidUsername,
    PasswordTooWeak,
    PermissionNotFound,
    RoleNotFound,
    UsernameAlreadyExists,
)
from identitycore.service.passwords import CredentialVerifier, PasswordPolicy
from identitycore.service.permissions import PermissionResolver
from identitycore.service.stores import AccountStore
from identitycore.storage.errors import ConstraintViolation
from identitycore.storage.models import (
    Account,
    AccountFilter,
    Permission,
    PermissionMode,
    Role,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9._-]{3,30}$")


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case an address before any lookup or write."""
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email)) and len(email) <= 254


def is_valid_username(username: str) -> bool:
    return bool(_USERNAME_RE.match(username))


def clean_optional(value: Optional[str]) -> Optional[str]:
    """Strip whitespace; an empty result becomes ``None``."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def translate_constraint(op: str, exc: ConstraintViolation) -> Exception:
    """Map a storage constraint failure onto the auth error taxonomy."""
    if exc.field == "email":
        return EmailAlreadyExists(op)
    if exc.field == "username":
        return UsernameAlreadyExists(op)
    if "role_id" in exc.detail:
        return RoleNotFound(op)
    if "permission_id" in exc.detail:
        return PermissionNotFound(op)
    if "account_id" in exc.detail:
        return AccountNotFound(op)
    return exc


class AccountService:
    """Registration plus administration of accounts, roles and permissions.

    Authorization of the acting administrator is the caller's job; these
    methods enforce data rules only.
    """

    def __init__(
        self,
        store: AccountStore,
        resolver: PermissionResolver,
        verifier: CredentialVerifier,
        policy: PasswordPolicy,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.verifier = verifier
        self.policy = policy
        self.settings = settings
        self.logger = logger

    async def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        role_id: Optional[int] = None,
    ) -> Account:
        op = "register"
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise InvalidEmail(op)
        username = clean_optional(username)
        if username is not None and not is_valid_username(username):
            raise InvalidUsername(op)
        if not self.policy.is_acceptable(password):
            raise PasswordTooWeak(op)
        if self.store.get_account_by_email(normalized):
            raise EmailAlreadyExists(op)
        if username is not None and self.store.get_account_by_username(username):
            raise UsernameAlreadyExists(op)
        if role_id is not None:
            role = self.store.get_role(role_id)
        else:
            role = self.store.get_role_by_name(self.settings.default_role_name)
        if role is None:
            raise RoleNotFound(op)

        password_hash = self.verifier.hash(password)
        try:
            account = self.store.create_account(
                normalized, username=username, password_hash=password_hash
            )
            self.store.assign_role(account.id, role.id)
        except ConstraintViolation as exc:
            raise translate_constraint(op, exc) from exc
        self.logger.info(
            "account_registered",
            account_id=account.id,
            email_hash=hash_identifier(normalized),
            role=role.name,
        )
        return self._require_account(op, account.id)

    def _require_account(self, op: str, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(op)
        return account

    def _require_role(self, op: str, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise RoleNotFound(op)
        return role

    def _require_permission(self, op: str, permission_id: int) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise PermissionNotFound(op)
        return permission

    # accounts
    def get_account(self, account_id: int) -> Account:
        return self._require_account("get_account", account_id)

    def get_account_by_email(self, email: str) -> Account:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            raise AccountNotFound("get_account_by_email")
        return account

    def list_accounts(self, filters: Optional[AccountFilter] = None) -> List[Account]:
        filters = filters or AccountFilter()
        if filters.email is not None:
            filters.email = normalize_email(filters.email)
        return self.store.list_accounts(filters)

    def update_account(self, account: Account) -> Account:
        op = "update_account"
        account.email = normalize_email(account.email)
        if not is_valid_email(account.email):
            raise InvalidEmail(op)
        account.username = clean_optional(account.username)
        if account.username is not None and not is_valid_username(account.username):
            raise InvalidUsername(op)
        try:
            updated = self.store.update_account(account)
        except ConstraintViolation as exc:
            raise translate_constraint(op, exc) from exc
        if updated is None:
            raise AccountNotFound(op)
        return updated

    def activate_account(self, account_id: int) -> None:
        if not self.store.set_account_active(account_id, True):
            raise AccountNotFound("activate_account")
        self.logger.info("account_activated", account_id=account_id)

    def deactivate_account(self, account_id: int) -> None:
        if not self.store.set_account_active(account_id, False):
            raise AccountNotFound("deactivate_account")
        self.logger.info("account_deactivated", account_id=account_id)

    # roles
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            return self.store.create_role(name.strip(), clean_optional(description))
        except ConstraintViolation as exc:
            raise translate_constraint("create_role", exc) from exc

    def get_role(self, role_id: int) -> Role:
        return self._require_role("get_role", role_id)

    def get_role_by_name(self, name: str) -> Role:
        role = self.store.get_role_by_name(name)
        if role is None:
            raise RoleNotFound("get_role_by_name")
        return role

    def update_role(self, role: Role) -> Role:
        updated = self.store.update_role(role)
        if updated is None:
            raise RoleNotFound("update_role")
        return updated

    def delete_role(self, role_id: int) -> None:
        if not self.store.delete_role(role_id):
            raise RoleNotFound("delete_role")
        self.logger.info("role_deleted", role_id=role_id)

    def list_roles(self, name: Optional[str] = None) -> List[Role]:
        return self.store.list_roles(name)

    def assign_permission_to_role(self, role_id: int, permission_id: int) -> None:
        op = "assign_permission_to_role"
        self._require_role(op, role_id)
        self._require_permission(op, permission_id)
        self.store.assign_permission_to_role(role_id, permission_id)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> None:
        op = "remove_permission_from_role"
        self._require_role(op, role_id)
        if not self.store.remove_permission_from_role(role_id, permission_id):
            raise PermissionNotFound(op)

    def get_role_permissions(self, role_id: int) -> List[Permission]:
        return self._require_role("get_role_permissions", role_id).permissions

    # permissions
    def create_permission(
        self,
        resource: str,
        action: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        resource, action = resource.strip(), action.strip()
        try:
            return self.store.create_permission(
                clean_optional(name) or f"{resource}:{action}",
                resource,
                action,
                clean_optional(description),
            )
        except ConstraintViolation as exc:
            raise translate_constraint("create_permission", exc) from exc

    def get_permission(self, permission_id: int) -> Permission:
        return self._require_permission("get_permission", permission_id)

    def get_permission_by_name(self, name: str) -> Permission:
        permission = self.store.get_permission_by_name(name)
        if permission is None:
            raise PermissionNotFound("get_permission_by_name")
        return permission

    def update_permission(self, permission: Permission) -> Permission:
        updated = self.store.update_permission(permission)
        if updated is None:
            raise PermissionNotFound("update_permission")
        return updated

    def delete_permission(self, permission_id: int) -> None:
        if not self.store.delete_permission(permission_id):
            raise PermissionNotFound("delete_permission")

    def list_permissions(
        self, resource: Optional[str] = None, action: Optional[str] = None
    ) -> List[Permission]:
        return self.store.list_permissions(resource, action)

    # account relations
    def assign_role(self, account_id: int, role_id: int) -> None:
        op = "assign_role"
        self._require_account(op, account_id)
        self._require_role(op, role_id)
        self.store.assign_role(account_id, role_id)
        self.logger.info("role_assigned", account_id=account_id, role_id=role_id)

    def remove_role(self, account_id: int, role_id: int) -> None:
        op = "remove_role"
        self._require_account(op, account_id)
        if not self.store.remove_role(account_id, role_id):
            raise RoleNotFound(op)
        self.logger.info("role_removed", account_id=account_id, role_id=role_id)

    def get_account_roles(self, account_id: int) -> List[Role]:
        self._require_account("get_account_roles", account_id)
        return self.store.list_account_roles(account_id)

    def _set_direct(self, op: str, account_id: int, permission_id: int, mode: PermissionMode) -> None:
        self._require_account(op, account_id)
        self._require_permission(op, permission_id)
        self.store.set_account_permission(account_id, permission_id, mode)
        self.logger.info(
            "account_permission_set",
            account_id=account_id,
            permission_id=permission_id,
            mode=mode.value,
        )

    def grant_permission(self, account_id: int, permission_id: int) -> None:
        self._set_direct("grant_permission", account_id, permission_id, PermissionMode.GRANT)

    def deny_permission(self, account_id: int, permission_id: int) -> None:
        self._set_direct("deny_permission", account_id, permission_id, PermissionMode.DENY)

    def remove_permission(self, account_id: int, permission_id: int) -> None:
        op = "remove_permission"
        self._require_account(op, account_id)
        if not self.store.remove_account_permission(account_id, permission_id):
            raise PermissionNotFound(op)

    def get_account_permissions(self, account_id: int) -> FrozenSet[str]:
        """Effective ``resource:action`` names for the account."""
        self._require_account("get_account_permissions", account_id)
        return self.resolver.effective_permissions(account_id)

    def get_account_direct_permissions(self, account_id: int):
        self._require_account("get_account_direct_permissions", account_id)
        return self.store.list_account_permissions(account_id)
