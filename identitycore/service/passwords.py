from __future__ import annotations

import secrets
import string
from typing import Callable, Iterable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from identitycore.config import MIN_PASSWORD_LENGTH, Settings
from identitycore.logging import get_logger

logger = get_logger(__name__)

PasswordCheck = Callable[[str], bool]

SPECIAL_CHARACTERS = frozenset(string.punctuation)


def has_character_classes(password: str) -> bool:
    """Require at least one upper, lower, digit and special character."""
    return (
        any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
        and any(c in SPECIAL_CHARACTERS for c in password)
    )


class PasswordPolicy:
    """Minimum length plus any number of pluggable predicates."""

    def __init__(
        self,
        min_length: int = MIN_PASSWORD_LENGTH,
        checks: Optional[Iterable[PasswordCheck]] = None,
    ) -> None:
        self.min_length = max(MIN_PASSWORD_LENGTH, min_length)
        self.checks = list(checks or [])

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        checks = [has_character_classes] if settings.password_require_complexity else []
        return cls(settings.password_min_length, checks)

    def is_acceptable(self, password: Optional[str]) -> bool:
        if not password or len(password) < self.min_length:
            return False
        return all(check(password) for check in self.checks)


class CredentialVerifier:
    """argon2id hashing with constant-time verification."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 2,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash.

        Keeps the response time of an unknown account close to that of a
        wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(plaintext, self._dummy_hash)
