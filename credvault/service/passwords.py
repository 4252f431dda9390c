from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from credvault.logging import get_logger
from credvault.service.errors import CorruptCredential, ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """Salted, parameterised password digests (argon2id).

    ``verify`` is a plain boolean check: a mismatch is an expected outcome,
    not an error. Only an unreadable stored digest raises.
    """

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        # verified against when the account does not exist so the unknown-user
        # path costs the same as a wrong password
        self._dummy_digest = self._hasher.hash("credvault-dummy-password")

    @property
    def algo(self) -> str:
        return PASSWORD_ALGO

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValidationError("password must not be empty")
        return self._hasher.hash(plaintext)

    def hash_with_algo(self, plaintext: str) -> Tuple[str, str]:
        return self.hash(plaintext), PASSWORD_ALGO

    def verify(self, plaintext: str, digest: str) -> bool:
        if not plaintext or not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.error("password_digest_unreadable", error=str(exc))
            raise CorruptCredential() from exc
        except VerificationError:
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return False

    def dummy_verify(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_digest, plaintext or "x")
        except VerificationError:
            pass


_SPECIAL_CHARS = set("@$!%*?&")
MIN_PASSWORD_LENGTH = 8


def check_password_policy(password: str) -> None:
    """Raise ValidationError unless the password meets the strength rules.

    At least eight characters with an upper-case letter, a lower-case letter,
    a digit and one of ``@$!%*?&``.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters long",
            detail={"field": "password"},
        )
    if not (
        any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
        and any(c in _SPECIAL_CHARS for c in password)
    ):
        raise ValidationError(
            "password must contain an uppercase letter, a lowercase letter, a number and one of @$!%*?&",
            detail={"field": "password"},
        )
