from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accesscore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordVerifier(Protocol):
    """Constant-time password verification capability."""

    algo: str

    def hash(self, password: str) -> str: ...

    def verify(self, stored_hash: str, candidate: str) -> bool: ...


class Argon2PasswordVerifier:
    algo = PASSWORD_ALGO

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored_hash: str, candidate: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        return self._pwd_hasher.check_needs_rehash(stored_hash)


def hash_password(verifier: PasswordVerifier, password: str) -> Tuple[str, str]:
    return verifier.hash(password), verifier.algo
