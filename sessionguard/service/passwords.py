from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHash,
    VerificationError,
    VerifyMismatchError,
)

from sessionguard.logging import get_logger
from sessionguard.service.errors import ServerError

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing with fixed cost parameters.

    A mismatch is a normal ``False``; anything else the library raises is an
    internal failure and surfaces as ``ServerError`` so that a broken hash
    never reads as "wrong password".
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash("sessionguard-dummy-password")

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("password hashing failed") from exc

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.error("password_verification_error", error=str(exc))
            raise ServerError("password verification failed") from exc

    def verify_dummy(self, plaintext: str) -> None:
        """Spend one verification so unknown accounts cost the same as known ones."""
        try:
            self._hasher.verify(self._dummy_hash, plaintext)
        except VerifyMismatchError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
