"""Tests for the invitation workflow."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import PASSWORD, RecordingNotifier, longest_loop_stall
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
from identitycore.service.invitations import InvitationAcceptance, InvitationService
from identitycore.service.notifier import DeliveryOutcome, NotificationKind
from identitycore.storage.models import InvitationState


def acceptance(**overrides):
    data = {
        "password": PASSWORD,
        "confirm_password": PASSWORD,
        "first_name": "Ada",
        "last_name": "Lovelace",
    }
    data.update(overrides)
    return InvitationAcceptance(**data)


@pytest.fixture
def invitations(runtime):
    return runtime.invitations


@pytest.fixture
def staff_role(store):
    return store.create_role("staff")


class TestCreateInvitation:
    """Tests for issuing invitations."""

    async def test_creates_pending_invitation_and_delivers(self, invitations, notifier, staff_role):
        invitation = await invitations.create_invitation(" New@X.com ", staff_role.id, 1)

        assert invitation.email == "new@x.com"
        assert invitation.state == InvitationState.PENDING
        assert invitation.token
        assert invitation.email_sent_at is not None
        recipient, token, context = notifier.deliveries[0]
        assert recipient == "new@x.com"
        assert token == invitation.token
        assert context.kind == NotificationKind.INVITATION
        assert context.role_name == "staff"

    async def test_existing_account_email(self, invitations, account, staff_role):
        with pytest.raises(EmailAlreadyExists):
            await invitations.create_invitation("a@x.com", staff_role.id, 1)

    async def test_invalid_email(self, invitations, staff_role):
        with pytest.raises(InvalidEmail):
            await invitations.create_invitation("not-an-email", staff_role.id, 1)

    async def test_unknown_role(self, invitations):
        with pytest.raises(RoleNotFound):
            await invitations.create_invitation("new@x.com", 42, 1)

    async def test_supersedes_pending_invitation(self, invitations, store, staff_role):
        first = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        await invitations.create_invitation("new@x.com", staff_role.id, 1)

        assert store.get_invitation(first.id).state == InvitationState.REVOKED
        with pytest.raises(InvitationRevoked):
            await invitations.validate_invitation(first.token)

    async def test_blank_names_become_none(self, invitations, staff_role):
        invitation = await invitations.create_invitation(
            "new@x.com", staff_role.id, 1, first_name="  ", last_name=" Lovelace "
        )
        assert invitation.first_name is None
        assert invitation.last_name == "Lovelace"

    async def test_delivery_failure_is_recorded(self, runtime, store, settings, staff_role):
        failing = RecordingNotifier(outcome=DeliveryOutcome.failed("recipient refused", attempts=3))
        service = InvitationService(
            store, runtime.resolver, runtime.verifier, runtime.policy, failing, settings
        )

        invitation = await service.create_invitation("new@x.com", staff_role.id, 1)

        stored = store.get_invitation(invitation.id)
        assert stored.email_sent_at is None
        assert stored.email_error == "recipient refused"
        assert stored.state == InvitationState.PENDING

    async def test_notifier_exception_does_not_abort(self, runtime, store, settings, staff_role):
        broken = RecordingNotifier(error=RuntimeError("smtp unavailable"))
        service = InvitationService(
            store, runtime.resolver, runtime.verifier, runtime.policy, broken, settings
        )

        invitation = await service.create_invitation("new@x.com", staff_role.id, 1)

        assert store.get_invitation(invitation.id).email_error == "smtp unavailable"

    async def test_slow_delivery_does_not_block_the_loop(self, runtime, store, settings, staff_role):
        slow = RecordingNotifier(delay=0.5)
        service = InvitationService(
            store, runtime.resolver, runtime.verifier, runtime.policy, slow, settings
        )

        invitation, stall = await longest_loop_stall(
            service.create_invitation("new@x.com", staff_role.id, 1)
        )

        assert stall < 0.3
        assert store.get_invitation(invitation.id).email_sent_at is not None


class TestValidateInvitation:
    """Tests for read-only validation."""

    async def test_returns_details(self, invitations, staff_role):
        invitation = await invitations.create_invitation(
            "new@x.com", staff_role.id, 7, first_name="Ada", position="Engineer"
        )

        details = await invitations.validate_invitation(invitation.token)

        assert details.email == "new@x.com"
        assert details.role_name == "staff"
        assert details.invited_by == 7
        assert details.first_name == "Ada"
        assert details.position == "Engineer"
        assert details.expires_at == invitation.expires_at

    async def test_unknown_token(self, invitations):
        with pytest.raises(InvitationNotFound):
            await invitations.validate_invitation("missing")
        with pytest.raises(InvitationNotFound):
            await invitations.validate_invitation("")

    async def test_expired_is_gone(self, invitations, staff_role, monkeypatch):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        later = invitations._now() + timedelta(days=3)
        monkeypatch.setattr(invitations, "_now", lambda: later)

        with pytest.raises(InvitationExpired) as exc_info:
            await invitations.validate_invitation(invitation.token)
        assert isinstance(exc_info.value, InvitationGone)


class TestAcceptInvitation:
    """Tests for accepting invitations."""

    async def test_accept_creates_account_with_role(self, runtime, invitations, store, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        account = await invitations.accept_invitation(invitation.token, acceptance(username="ada"))

        assert account.email == "new@x.com"
        assert account.username == "ada"
        assert account.role_names == ["staff"]
        stored = store.get_invitation(invitation.id)
        assert stored.state == InvitationState.USED
        assert stored.used_at is not None
        assert (await runtime.tokens.login("new@x.com", PASSWORD)).access_token

    async def test_accept_twice_fails_as_used(self, invitations, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        await invitations.accept_invitation(invitation.token, acceptance())

        with pytest.raises(InvitationUsed):
            await invitations.accept_invitation(invitation.token, acceptance())

    async def test_names_fall_back_to_invitation(self, invitations, staff_role):
        invitation = await invitations.create_invitation(
            "new@x.com", staff_role.id, 1, first_name="Ada", last_name="Lovelace"
        )

        account = await invitations.accept_invitation(
            invitation.token, acceptance(first_name=None, last_name=None)
        )

        assert (account.first_name, account.last_name) == ("Ada", "Lovelace")

    async def test_names_required(self, invitations, store, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        with pytest.raises(InvitationNameRequired):
            await invitations.accept_invitation(invitation.token, acceptance(last_name=" "))
        assert store.get_invitation(invitation.id).state == InvitationState.PENDING

    async def test_password_mismatch(self, invitations, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        with pytest.raises(PasswordMismatch):
            await invitations.accept_invitation(
                invitation.token, acceptance(confirm_password="Other123!")
            )

    async def test_weak_password(self, invitations, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        with pytest.raises(PasswordTooWeak):
            await invitations.accept_invitation(
                invitation.token, acceptance(password="weak", confirm_password="weak")
            )

    async def test_invalid_username(self, invitations, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        with pytest.raises(InvalidUsername):
            await invitations.accept_invitation(invitation.token, acceptance(username="a b"))

    async def test_username_taken(self, runtime, invitations, staff_role, default_role):
        await runtime.accounts.register("b@x.com", PASSWORD, username="taken")
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        with pytest.raises(UsernameAlreadyExists):
            await invitations.accept_invitation(invitation.token, acceptance(username="TAKEN"))

    async def test_email_claimed_meanwhile(self, runtime, invitations, store, staff_role, default_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        await runtime.accounts.register("new@x.com", PASSWORD)

        with pytest.raises(EmailAlreadyExists):
            await invitations.accept_invitation(invitation.token, acceptance())
        assert store.get_invitation(invitation.id).state == InvitationState.PENDING

    async def test_expired_invitation(self, invitations, staff_role, monkeypatch):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        later = invitations._now() + timedelta(hours=49)
        monkeypatch.setattr(invitations, "_now", lambda: later)

        with pytest.raises(InvitationExpired):
            await invitations.accept_invitation(invitation.token, acceptance())

    def test_concurrent_accept_creates_one_account(self, invitations, store, staff_role):
        """Only one of many racing acceptances wins."""
        invitation = asyncio.run(invitations.create_invitation("new@x.com", staff_role.id, 1))

        def attempt(_):
            try:
                return asyncio.run(invitations.accept_invitation(invitation.token, acceptance()))
            except InvitationUsed as exc:
                return exc

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, range(6)))

        accounts = [r for r in results if not isinstance(r, Exception)]
        assert len(accounts) == 1
        assert sum(isinstance(r, InvitationUsed) for r in results) == 5
        assert [a.email for a in store.accounts.values()] == ["new@x.com"]


class TestResendAndRevoke:
    """Tests for resend and revoke."""

    async def test_resend_increments_retry_count(self, invitations, notifier, store, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        await invitations.resend_invitation(invitation.id, actor_id=1)
        await invitations.resend_invitation(invitation.id, actor_id=1)

        assert store.get_invitation(invitation.id).email_retry_count == 2
        assert len(notifier.deliveries) == 3

    async def test_resend_unknown(self, invitations):
        with pytest.raises(InvitationNotFound):
            await invitations.resend_invitation(99, actor_id=1)

    async def test_resend_expired(self, invitations, staff_role, monkeypatch):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        later = invitations._now() + timedelta(days=3)
        monkeypatch.setattr(invitations, "_now", lambda: later)

        with pytest.raises(InvitationExpired):
            await invitations.resend_invitation(invitation.id, actor_id=1)

    async def test_revoke(self, invitations, store, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)

        await invitations.revoke_invitation(invitation.id, actor_id=1)

        stored = store.get_invitation(invitation.id)
        assert stored.state == InvitationState.REVOKED
        assert stored.revoked_at is not None
        with pytest.raises(InvitationRevoked):
            await invitations.accept_invitation(invitation.token, acceptance())

    async def test_revoke_used(self, invitations, staff_role):
        invitation = await invitations.create_invitation("new@x.com", staff_role.id, 1)
        await invitations.accept_invitation(invitation.token, acceptance())

        with pytest.raises(InvitationUsed):
            await invitations.revoke_invitation(invitation.id, actor_id=1)


class TestMaintenance:
    """Tests for listing and cleanup."""

    async def test_list_pending_excludes_used_and_revoked(self, invitations, staff_role):
        keep = await invitations.create_invitation("one@x.com", staff_role.id, 1)
        used = await invitations.create_invitation("two@x.com", staff_role.id, 1)
        revoked = await invitations.create_invitation("three@x.com", staff_role.id, 1)
        await invitations.accept_invitation(used.token, acceptance())
        await invitations.revoke_invitation(revoked.id, actor_id=1)

        assert [i.id for i in invitations.list_pending_invitations()] == [keep.id]

    async def test_cleanup_expired(self, invitations, store, staff_role):
        await invitations.create_invitation("one@x.com", staff_role.id, 1)
        store.create_invitation(
            "old@x.com", "old-token", staff_role.id, 1, invitations._now() - timedelta(hours=1)
        )

        assert invitations.cleanup_expired_invitations() == 1
        assert store.get_invitation_by_token("old-token") is None
