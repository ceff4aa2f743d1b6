"""Tests for effective permission resolution."""

import itertools

from identitycore.service.permissions import PermissionResolver, compute_effective_permissions
from identitycore.storage.memory import MemoryStore
from identitycore.storage.models import AccountPermission, Permission, PermissionMode, Role


def perm(pid, resource, action):
    return Permission(id=pid, name=f"{resource}:{action}", resource=resource, action=action)


USERS_MANAGE = perm(1, "users", "manage")
REPORTS_READ = perm(2, "reports", "read")
ROLES_READ = perm(3, "roles", "read")


def direct(permission, mode):
    return AccountPermission(account_id=1, permission=permission, mode=mode)


class TestComputeEffectivePermissions:
    """Tests for the pure resolution function."""

    def test_union_of_roles_and_grants(self):
        roles = [Role(id=1, name="reader", permissions=[REPORTS_READ])]
        grants = [direct(ROLES_READ, PermissionMode.GRANT)]

        assert compute_effective_permissions(roles, grants) == {"reports:read", "roles:read"}

    def test_deny_overrides_role_grant(self):
        """An admin role grant is removed by a direct deny."""
        roles = [Role(id=1, name="admin", permissions=[USERS_MANAGE, ROLES_READ])]
        denies = [direct(USERS_MANAGE, PermissionMode.DENY)]

        assert compute_effective_permissions(roles, denies) == {"roles:read"}

    def test_deny_overrides_direct_grant_in_any_order(self):
        roles = [
            Role(id=1, name="admin", permissions=[USERS_MANAGE]),
            Role(id=2, name="ops", permissions=[USERS_MANAGE, REPORTS_READ]),
        ]
        relations = [
            direct(USERS_MANAGE, PermissionMode.GRANT),
            AccountPermission(account_id=1, permission=USERS_MANAGE, mode=PermissionMode.DENY),
        ]

        results = {
            compute_effective_permissions(role_order, relation_order)
            for role_order in itertools.permutations(roles)
            for relation_order in itertools.permutations(relations)
        }

        assert results == {frozenset({"reports:read"})}

    def test_matches_on_resource_and_action(self):
        """Names are ignored; resource:action is what counts."""
        odd = Permission(id=9, name="legacy-name", resource="users", action="manage")
        roles = [Role(id=1, name="admin", permissions=[odd])]

        assert compute_effective_permissions(roles, []) == {"users:manage"}

    def test_empty(self):
        assert compute_effective_permissions([], []) == frozenset()


class TestPermissionResolver:
    """Tests for store-backed resolution."""

    def test_reads_current_store_state(self):
        store = MemoryStore()
        account = store.create_account("a@x.com")
        admin = store.create_role("admin")
        manage = store.create_permission("users:manage", "users", "manage")
        store.assign_permission_to_role(admin.id, manage.id)
        store.assign_role(account.id, admin.id)
        resolver = PermissionResolver(store)

        assert resolver.has_permission(account.id, "users:manage")

        store.set_account_permission(account.id, manage.id, PermissionMode.DENY)
        assert not resolver.has_permission(account.id, "users:manage")
        assert resolver.effective_permissions(account.id) == frozenset()

    def test_unknown_account_has_nothing(self):
        resolver = PermissionResolver(MemoryStore())

        assert resolver.effective_permissions(42) == frozenset()
