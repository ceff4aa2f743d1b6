from __future__ import annotations

from typing import FrozenSet, Iterable, Optional

from identitycore.service.stores import AccountStore
from identitycore.storage.models import AccountPermission, Role


def compute_effective_permissions(
    roles: Iterable[Role], direct: Iterable[AccountPermission]
) -> FrozenSet[str]:
    """Resolve ``resource:action`` names from roles and direct grants/denies.

    (role permissions | direct grants) - direct denies. Computed as set
    algebra so the result does not depend on the order of roles or
    relations, and a deny wins over every grant of the same permission.
    """
    from_roles = {perm.full_name for role in roles for perm in role.permissions}
    direct = list(direct)
    granted = {entry.permission.full_name for entry in direct if entry.granted}
    denied = {entry.permission.full_name for entry in direct if not entry.granted}
    return frozenset((from_roles | granted) - denied)


class PermissionResolver:
    """Reads roles and direct permissions from the store on every call."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def effective_permissions(self, account_id: int) -> FrozenSet[str]:
        roles = self.store.list_account_roles(account_id)
        direct = self.store.list_account_permissions(account_id)
        return compute_effective_permissions(roles, direct)

    def has_permission(self, account_id: int, permission: str) -> bool:
        return permission in self.effective_permissions(account_id)

    def get_role(self, role_id: int) -> Optional[Role]:
        return self.store.get_role(role_id)
