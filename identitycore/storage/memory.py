from __future__ import annotations

import copy
import itertools
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from identitycore.logging import get_logger
from identitycore.storage.errors import ConstraintViolation
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
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments.

    Every public method takes ``_data_lock`` so each call is atomic with
    respect to the others. Records handed out are copies; callers persist
    changes through the update methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        # Insertion-ordered relations
        self.account_roles: Dict[int, List[int]] = {}
        self.role_permissions: Dict[int, List[int]] = {}
        self.account_permissions: Dict[Tuple[int, int], PermissionMode] = {}
        self.tokens: Dict[str, Token] = {}
        self.invitations: Dict[int, InvitationToken] = {}
        self.reset_tokens: Dict[int, PasswordResetToken] = {}
        self.audit_events: List[AuditEvent] = []
        self._ids = {
            name: itertools.count(1)
            for name in ("account", "role", "permission", "token", "invitation", "reset")
        }
        # RLock so atomic units can call the public helpers
        self._data_lock = threading.RLock()

    def _next_id(self, kind: str) -> int:
        return next(self._ids[kind])

    # accounts
    def _email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool:
        return any(
            acc.email == email and acc.id != exclude_id for acc in self.accounts.values()
        )

    def _username_taken(self, username: Optional[str], exclude_id: Optional[int] = None) -> bool:
        if not username:
            return False
        lowered = username.lower()
        return any(
            acc.username is not None
            and acc.username.lower() == lowered
            and acc.id != exclude_id
            for acc in self.accounts.values()
        )

    def _with_roles(self, account: Account) -> Account:
        result = copy.deepcopy(account)
        result.roles = self._account_roles_unlocked(account.id)
        return result

    def create_account(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._username_taken(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            now = utcnow()
            account = Account(
                id=self._next_id("account"),
                email=email,
                username=username,
                password_hash=password_hash,
                active=active,
                first_name=first_name,
                last_name=last_name,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self.account_roles[account.id] = []
            return copy.deepcopy(account)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._with_roles(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return self._with_roles(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            lowered = username.lower()
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.username is not None and a.username.lower() == lowered
                ),
                None,
            )
            return self._with_roles(account) if account else None

    def update_account(self, account: Account) -> Optional[Account]:
        with self._data_lock:
            existing = self.accounts.get(account.id)
            if not existing:
                return None
            if self._email_taken(account.email, exclude_id=account.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._username_taken(account.username, exclude_id=account.id):
                raise ConstraintViolation("username already exists", {"field": "username"})
            existing.email = account.email
            existing.username = account.username
            existing.active = account.active
            existing.first_name = account.first_name
            existing.last_name = account.last_name
            existing.updated_at = utcnow()
            return self._with_roles(existing)

    def update_password(self, account_id: int, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            account.updated_at = utcnow()
            return True

    def set_account_active(self, account_id: int, active: bool) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.active = active
            account.updated_at = utcnow()
            return True

    def record_login(self, account_id: int, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login = when

    def list_accounts(self, filters: AccountFilter) -> List[Account]:
        with self._data_lock:
            results = []
            for account in sorted(self.accounts.values(), key=lambda a: a.id):
                if filters.email is not None and account.email != filters.email:
                    continue
                if filters.username is not None and (
                    account.username is None
                    or account.username.lower() != filters.username.lower()
                ):
                    continue
                if filters.active is not None and account.active != filters.active:
                    continue
                hydrated = self._with_roles(account)
                if filters.role_name is not None and filters.role_name not in hydrated.role_names:
                    continue
                results.append(hydrated)
            return results[filters.offset : filters.offset + filters.limit]

    # roles
    def _role_with_permissions(self, role: Role) -> Role:
        result = copy.deepcopy(role)
        result.permissions = [
            copy.deepcopy(self.permissions[pid])
            for pid in self.role_permissions.get(role.id, [])
            if pid in self.permissions
        ]
        return result

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=self._next_id("role"), name=name, description=description)
            self.roles[role.id] = role
            self.role_permissions[role.id] = []
            return copy.deepcopy(role)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._role_with_permissions(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return self._role_with_permissions(role) if role else None

    def update_role(self, role: Role) -> Optional[Role]:
        with self._data_lock:
            existing = self.roles.get(role.id)
            if not existing:
                return None
            if any(r.name == role.name and r.id != role.id for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            existing.name = role.name
            existing.description = role.description
            existing.updated_at = utcnow()
            return self._role_with_permissions(existing)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.role_permissions.pop(role_id, None)
            for role_ids in self.account_roles.values():
                if role_id in role_ids:
                    role_ids.remove(role_id)
            return True

    def list_roles(self, name: Optional[str] = None) -> List[Role]:
        with self._data_lock:
            return [
                self._role_with_permissions(role)
                for role in sorted(self.roles.values(), key=lambda r: r.id)
                if name is None or role.name == name
            ]

    # permissions
    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(
                id=self._next_id("permission"),
                name=name,
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[permission.id] = permission
            return copy.deepcopy(permission)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            return copy.deepcopy(permission) if permission else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = next((p for p in self.permissions.values() if p.name == name), None)
            return copy.deepcopy(permission) if permission else None

    def update_permission(self, permission: Permission) -> Optional[Permission]:
        with self._data_lock:
            existing = self.permissions.get(permission.id)
            if not existing:
                return None
            if any(
                p.name == permission.name and p.id != permission.id
                for p in self.permissions.values()
            ):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            existing.name = permission.name
            existing.resource = permission.resource
            existing.action = permission.action
            existing.description = permission.description
            existing.updated_at = utcnow()
            return copy.deepcopy(existing)

    def delete_permission(self, permission_id: int) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for permission_ids in self.role_permissions.values():
                if permission_id in permission_ids:
                    permission_ids.remove(permission_id)
            for key in [k for k in self.account_permissions if k[1] == permission_id]:
                self.account_permissions.pop(key, None)
            return True

    def list_permissions(
        self, resource: Optional[str] = None, action: Optional[str] = None
    ) -> List[Permission]:
        with self._data_lock:
            return [
                copy.deepcopy(p)
                for p in sorted(self.permissions.values(), key=lambda p: p.id)
                if (resource is None or p.resource == resource)
                and (action is None or p.action == action)
            ]

    def assign_permission_to_role(self, role_id: int, permission_id: int) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            linked = self.role_permissions.setdefault(role_id, [])
            if permission_id not in linked:
                linked.append(permission_id)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool:
        with self._data_lock:
            linked = self.role_permissions.get(role_id, [])
            if permission_id not in linked:
                return False
            linked.remove(permission_id)
            return True

    def get_role_permissions(self, role_id: int) -> List[Permission]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._role_with_permissions(role).permissions if role else []

    # account relations
    def _account_roles_unlocked(self, account_id: int) -> List[Role]:
        return [
            self._role_with_permissions(self.roles[rid])
            for rid in self.account_roles.get(account_id, [])
            if rid in self.roles
        ]

    def assign_role(self, account_id: int, role_id: int) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            assigned = self.account_roles.setdefault(account_id, [])
            if role_id not in assigned:
                assigned.append(role_id)

    def remove_role(self, account_id: int, role_id: int) -> bool:
        with self._data_lock:
            assigned = self.account_roles.get(account_id, [])
            if role_id not in assigned:
                return False
            assigned.remove(role_id)
            return True

    def list_account_roles(self, account_id: int) -> List[Role]:
        with self._data_lock:
            return self._account_roles_unlocked(account_id)

    def set_account_permission(
        self, account_id: int, permission_id: int, mode: PermissionMode
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            # Re-setting replaces the mode but keeps the original position
            self.account_permissions[(account_id, permission_id)] = PermissionMode(mode)

    def remove_account_permission(self, account_id: int, permission_id: int) -> bool:
        with self._data_lock:
            return self.account_permissions.pop((account_id, permission_id), None) is not None

    def list_account_permissions(self, account_id: int) -> List[AccountPermission]:
        with self._data_lock:
            return [
                AccountPermission(
                    account_id=acc_id,
                    permission=copy.deepcopy(self.permissions[perm_id]),
                    mode=mode,
                )
                for (acc_id, perm_id), mode in self.account_permissions.items()
                if acc_id == account_id and perm_id in self.permissions
            ]

    # refresh tokens
    def _insert_token_unlocked(
        self,
        account_id: int,
        token: str,
        expires_at: datetime,
        *,
        family_id: str,
        generation: int,
        mobile: bool,
        identifier: Optional[str],
    ) -> Token:
        if account_id not in self.accounts:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        if token in self.tokens:
            raise ConstraintViolation("token already exists", {"field": "token"})
        record = Token(
            id=self._next_id("token"),
            token=token,
            account_id=account_id,
            expires_at=expires_at,
            family_id=family_id,
            generation=generation,
            mobile=mobile,
            identifier=identifier,
        )
        self.tokens[token] = record
        return copy.deepcopy(record)

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
    ) -> Token:
        with self._data_lock:
            return self._insert_token_unlocked(
                account_id,
                token,
                expires_at,
                family_id=family_id,
                generation=generation,
                mobile=mobile,
                identifier=identifier,
            )

    def get_token(self, token: str) -> Optional[Token]:
        with self._data_lock:
            record = self.tokens.get(token)
            return copy.deepcopy(record) if record else None

    def delete_token(self, token: str) -> bool:
        with self._data_lock:
            return self.tokens.pop(token, None) is not None

    def delete_account_tokens(
        self, account_id: int, except_token: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                value
                for value, record in self.tokens.items()
                if record.account_id == account_id and value != except_token
            ]
            for value in stale:
                self.tokens.pop(value, None)
            return len(stale)

    def delete_token_family(self, family_id: str) -> int:
        with self._data_lock:
            stale = [v for v, rec in self.tokens.items() if rec.family_id == family_id]
            for value in stale:
                self.tokens.pop(value, None)
            return len(stale)

    def latest_family_generation(self, family_id: str) -> Optional[int]:
        with self._data_lock:
            generations = [
                rec.generation for rec in self.tokens.values() if rec.family_id == family_id
            ]
            return max(generations) if generations else None

    def list_account_tokens(self, account_id: int) -> List[Token]:
        with self._data_lock:
            records = [r for r in self.tokens.values() if r.account_id == account_id]
            return [
                copy.deepcopy(r)
                for r in sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)
            ]

    def prune_account_tokens(self, account_id: int, keep: int) -> int:
        with self._data_lock:
            records = sorted(
                (r for r in self.tokens.values() if r.account_id == account_id),
                key=lambda r: (r.created_at, r.id),
                reverse=True,
            )
            stale = records[max(0, keep) :]
            for record in stale:
                self.tokens.pop(record.token, None)
            return len(stale)

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
        with self._data_lock:
            previous = self.tokens.get(old_token)
            if previous is None:
                return None
            replacement = self._insert_token_unlocked(
                previous.account_id,
                token,
                expires_at,
                family_id=family_id,
                generation=generation,
                mobile=mobile,
                identifier=identifier,
            )
            self.tokens.pop(old_token, None)
            return replacement

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [v for v, rec in self.tokens.items() if rec.is_expired(now)]
            for value in stale:
                self.tokens.pop(value, None)
            return len(stale)

    # invitations
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
    ) -> InvitationToken:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if any(inv.token == token for inv in self.invitations.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            invitation = InvitationToken(
                id=self._next_id("invitation"),
                token=token,
                email=email,
                role_id=role_id,
                created_by=created_by,
                expires_at=expires_at,
                first_name=first_name,
                last_name=last_name,
                position=position,
            )
            self.invitations[invitation.id] = invitation
            return copy.deepcopy(invitation)

    def get_invitation(self, invitation_id: int) -> Optional[InvitationToken]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            return copy.deepcopy(invitation) if invitation else None

    def get_invitation_by_token(self, token: str) -> Optional[InvitationToken]:
        with self._data_lock:
            invitation = next(
                (inv for inv in self.invitations.values() if inv.token == token), None
            )
            return copy.deepcopy(invitation) if invitation else None

    def _transition_unlocked(
        self,
        invitation: InvitationToken,
        state: InvitationState,
        when: datetime,
    ) -> None:
        invitation.state = state
        invitation.updated_at = when
        if state == InvitationState.USED:
            invitation.used_at = when
        elif state == InvitationState.REVOKED:
            invitation.revoked_at = when

    def update_invitation_state(
        self,
        invitation_id: int,
        state: InvitationState,
        *,
        when: datetime,
        expected: InvitationState = InvitationState.PENDING,
    ) -> bool:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.state != expected:
                return False
            self._transition_unlocked(invitation, state, when)
            return True

    def revoke_pending_invitations(self, email: str, when: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for invitation in self.invitations.values():
                if invitation.email == email and invitation.state == InvitationState.PENDING:
                    self._transition_unlocked(invitation, InvitationState.REVOKED, when)
                    revoked += 1
            return revoked

    def record_invitation_delivery(
        self,
        invitation_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None:
                return
            invitation.email_sent_at = sent_at
            invitation.email_error = error
            invitation.email_retry_count = retry_count
            invitation.updated_at = utcnow()

    def list_pending_invitations(self, now: datetime) -> List[InvitationToken]:
        with self._data_lock:
            return [
                copy.deepcopy(inv)
                for inv in sorted(self.invitations.values(), key=lambda i: i.id)
                if inv.is_pending(now)
            ]

    def delete_expired_invitations(self, now: datetime) -> int:
        with self._data_lock:
            stale = [inv_id for inv_id, inv in self.invitations.items() if inv.is_expired(now)]
            for inv_id in stale:
                self.invitations.pop(inv_id, None)
            return len(stale)

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
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or not invitation.is_pending(when):
                return None
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            # create_account validates uniqueness before touching any state
            account = self.create_account(
                email,
                username=username,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
            )
            self.account_roles[account.id] = [role_id]
            self._transition_unlocked(invitation, InvitationState.USED, when)
            return self._with_roles(self.accounts[account.id])

    # password reset tokens
    def create_reset_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            record = PasswordResetToken(
                id=self._next_id("reset"),
                account_id=account_id,
                token=token,
                expires_at=expires_at,
            )
            self.reset_tokens[record.id] = record
            return copy.deepcopy(record)

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = next((r for r in self.reset_tokens.values() if r.token == token), None)
            return copy.deepcopy(record) if record else None

    def mark_reset_token_used(self, token_id: int, when: datetime) -> bool:
        with self._data_lock:
            record = self.reset_tokens.get(token_id)
            if record is None or record.used:
                return False
            record.used = True
            record.used_at = when
            return True

    def invalidate_reset_tokens(self, account_id: int, when: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.reset_tokens.values():
                if record.account_id == account_id and not record.used:
                    record.used = True
                    record.used_at = when
                    count += 1
            return count

    def record_reset_delivery(
        self,
        token_id: int,
        *,
        sent_at: Optional[datetime],
        error: Optional[str],
        retry_count: int,
    ) -> None:
        with self._data_lock:
            record = self.reset_tokens.get(token_id)
            if record is None:
                return
            record.email_sent_at = sent_at
            record.email_error = error
            record.email_retry_count = retry_count

    def redeem_reset_token(
        self, token_id: int, password_hash: str, when: datetime
    ) -> Optional[int]:
        with self._data_lock:
            record = self.reset_tokens.get(token_id)
            if record is None or not record.is_valid(when):
                return None
            if not self.update_password(record.account_id, password_hash):
                return None
            self.mark_reset_token_used(token_id, when)
            self.delete_account_tokens(record.account_id)
            return record.account_id

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [rid for rid, rec in self.reset_tokens.items() if rec.is_expired(now)]
            for rid in stale:
                self.reset_tokens.pop(rid, None)
            return len(stale)

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(copy.deepcopy(event))

    def list_audit_events(
        self, account_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                copy.deepcopy(e)
                for e in self.audit_events
                if account_id is None or e.account_id == account_id
            ]
            return events[-limit:]
