from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHash,
    VerificationError,
    VerifyMismatchError,
)

from gatekeep.logging import get_logger
from gatekeep.service.errors import InternalError

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and recovery codes.

    Each digest embeds its own random salt and parameters, so the same
    plaintext never hashes to the same string twice.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("secret_hash_failed", error_type=type(exc).__name__)
            raise InternalError("unable to hash secret") from exc

    def verify(self, plaintext: str, digest: str | None) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
