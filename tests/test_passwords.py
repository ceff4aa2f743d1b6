"""Tests for password hashing and the strength policy."""

import pytest

from identitycore.config import Settings
from identitycore.service.passwords import (
    CredentialVerifier,
    PasswordPolicy,
    has_character_classes,
)


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=8, parallelism=1)


class TestCredentialVerifier:
    """Tests for argon2id hashing."""

    def test_hash_and_verify(self, verifier):
        hashed = verifier.hash("Secret123!")

        assert hashed.startswith("$argon2id$")
        assert verifier.verify("Secret123!", hashed)
        assert not verifier.verify("Secret123?", hashed)

    def test_hashes_are_salted(self, verifier):
        assert verifier.hash("Secret123!") != verifier.hash("Secret123!")

    def test_missing_or_garbage_hash(self, verifier):
        assert not verifier.verify("Secret123!", None)
        assert not verifier.verify("Secret123!", "")
        assert not verifier.verify("Secret123!", "not-a-hash")

    def test_burn_never_matches(self, verifier):
        verifier.burn("Secret123!")
        verifier.burn("anything")

        assert verifier._dummy_hash is not None

    def test_from_settings(self):
        settings = Settings(argon2_time_cost=2, argon2_memory_cost=16, argon2_parallelism=1)
        verifier = CredentialVerifier.from_settings(settings)

        assert "$m=16,t=2,p=1$" in verifier.hash("Secret123!")


class TestPasswordPolicy:
    """Tests for password acceptance."""

    def test_minimum_length(self):
        policy = PasswordPolicy(min_length=10)

        assert not policy.is_acceptable("short")
        assert not policy.is_acceptable("")
        assert not policy.is_acceptable(None)
        assert policy.is_acceptable("long enough")

    def test_floor_cannot_be_lowered(self):
        policy = PasswordPolicy(min_length=2)

        assert policy.min_length == 8
        assert not policy.is_acceptable("abc")

    def test_pluggable_checks(self):
        policy = PasswordPolicy(checks=[lambda p: "password" not in p.lower()])

        assert not policy.is_acceptable("MyPassword1")
        assert policy.is_acceptable("correct horse")

    @pytest.mark.parametrize(
        "password, expected",
        [
            ("Secret123!", True),
            ("secret123!", False),
            ("SECRET123!", False),
            ("Secret!!!!", False),
            ("Secret1234", False),
        ],
    )
    def test_character_classes(self, password, expected):
        assert has_character_classes(password) is expected

    def test_from_settings_complexity_toggle(self):
        strict = PasswordPolicy.from_settings(Settings(password_require_complexity=True))
        lenient = PasswordPolicy.from_settings(Settings(password_require_complexity=False))

        assert not strict.is_acceptable("alllowercase")
        assert lenient.is_acceptable("alllowercase")
